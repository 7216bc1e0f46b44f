import argparse
import asyncio
import os
import uuid
from typing import List, Optional

from loguru import logger

from tuneshelf.catalog.sql import SqlCatalog
from tuneshelf.core.config import settings
from tuneshelf.core.db import AsyncSessionLocal, init_db
from tuneshelf.core.events import CatalogEvents, LoggingObserver
from tuneshelf.core.exceptions import CatalogUnavailableError, PersistenceError
from tuneshelf.core.logger import setup_logging
from tuneshelf.core.stats import ManifestStatus
from tuneshelf.core.sync_config import SyncOptions
from tuneshelf.core.task_store import TaskStore
from tuneshelf.worker.orchestrator import LibrarySynchronizer
from tuneshelf.worker.tidy import tidy
from tuneshelf.worker.watcher import LibraryWatcher, WatchEventHandler, WatchRecord


async def run_sync(
    path: Optional[str],
    tags: Optional[List[str]] = None,
    force: bool = False,
    substitutions: Optional[List[str]] = None,
    owner_id: Optional[int] = None,
    task_id: Optional[str] = None,
) -> int:
    """Full sync of a media directory or manifest.

    Returns:
        Process exit code.
    """
    source = path or settings.MEDIA_PATH
    if not source:
        logger.error("No media path given and MEDIA_PATH is not configured")
        return 2
    if not os.path.exists(source):
        logger.error(f"Media source not found: {source}")
        return 2

    await init_db()
    options = SyncOptions.create(tags=tags, force=force, substitutions=substitutions)
    task_id = task_id or uuid.uuid4().hex[:8]
    tasks = TaskStore.get_global()
    tasks.cleanup_old_tasks()
    tasks.create_task(task_id, "sync")
    async with AsyncSessionLocal() as session:
        synchronizer = LibrarySynchronizer(SqlCatalog(session), observer=LoggingObserver())
        try:
            with logger.contextualize(task_id=task_id):
                stats = await synchronizer.sync(
                    source, options, task_id=task_id, owner_id=owner_id
                )
        except CatalogUnavailableError as e:
            logger.error(f"Sync aborted: {e}")
            return 1
        finally:
            synchronizer.close()

    logger.info(
        f"Created: {stats.created}, Updated: {stats.updated}, Unchanged: {stats.unchanged}, "
        f"Failed: {stats.failed}, Deleted: {stats.deleted}"
    )
    if stats.manifest_status not in (None, ManifestStatus.OK):
        logger.error(f"Manifest import failed: {stats.manifest_status.value}")
        return 1
    return 0


async def run_handle_event(line: str) -> int:
    """Apply a single inotify record, e.g. from ``inotifywait -m -r --format "%e %w%f"``."""
    try:
        record = WatchRecord.from_inotify(line)
    except ValueError as e:
        logger.error(str(e))
        return 2

    await init_db()
    async with AsyncSessionLocal() as session:
        handler = WatchEventHandler(SqlCatalog(session))
        try:
            await handler.handle(record)
        except PersistenceError as e:
            logger.error(f"Failed to apply {line!r}: {e}")
            return 1
        finally:
            handler.reconciler.close()
    return 0


async def run_watch(path: Optional[str]) -> int:
    root = path or settings.MEDIA_PATH
    if not root:
        logger.error("No media path given and MEDIA_PATH is not configured")
        return 2

    await init_db()
    events = CatalogEvents()
    async with AsyncSessionLocal() as session:
        handler = WatchEventHandler(SqlCatalog(session), events=events)
        watcher = LibraryWatcher(root, handler)
        try:
            with logger.contextualize(task_id="watch"):
                await watcher.run()
        except asyncio.CancelledError:
            logger.info("Watcher stopped.")
        finally:
            handler.reconciler.close()
    return 0


async def run_tidy() -> int:
    await init_db()
    async with AsyncSessionLocal() as session:
        catalog = SqlCatalog(session)
        result = await tidy(catalog)
        await catalog.commit()
    logger.success(
        f"Tidy complete. Albums removed: {result.albums_deleted}, "
        f"artists removed: {result.artists_deleted}"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tuneshelf catalog sync")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser(
        "init-db", help="Initialize database tables and sentinel rows"
    )
    init_parser.add_argument(
        "--force", action="store_true", help="Drop all tables first (a backup is taken)"
    )

    sync_parser = subparsers.add_parser(
        "sync", help="Sync the catalog with a media directory or manifest (.xml)"
    )
    sync_parser.add_argument("path", nargs="?", help="Media directory or manifest file")
    sync_parser.add_argument(
        "--tags",
        nargs="+",
        metavar="TAG",
        help="Tags to sync for existing tracks (default: all)",
    )
    sync_parser.add_argument(
        "--force", action="store_true", help="Rewrite existing tracks even if unchanged"
    )
    sync_parser.add_argument(
        "--substitute",
        nargs=2,
        action="append",
        metavar=("FIND", "REPLACE"),
        help="Rewrite manifest locations; may be repeated, applied in order",
    )
    sync_parser.add_argument(
        "--owner", type=int, metavar="USER_ID", help="Owner of manifest playlists"
    )

    watch_parser = subparsers.add_parser("watch", help="Watch a media directory for changes")
    watch_parser.add_argument("path", nargs="?", help="Media directory")

    event_parser = subparsers.add_parser(
        "handle-event", help='Apply one inotify line ("EVENTS /path")'
    )
    event_parser.add_argument("record", help='e.g. "CLOSE_WRITE,CLOSE /music/a.mp3"')

    subparsers.add_parser("tidy", help="Remove unreferenced albums and artists")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        "DEBUG" if args.verbose else None,
        "tuneshelf-watch" if args.command == "watch" else "tuneshelf",
    )

    if args.command == "init-db":
        asyncio.run(init_db(force=args.force))
        logger.info("Database initialized.")
        return 0

    elif args.command == "sync":
        substitutions = (
            [s for pair in args.substitute for s in pair] if args.substitute else None
        )
        return asyncio.run(
            run_sync(args.path, args.tags, args.force, substitutions, args.owner)
        )

    elif args.command == "watch":
        try:
            return asyncio.run(run_watch(args.path))
        except KeyboardInterrupt:
            logger.info("Watcher interrupted.")
            return 0

    elif args.command == "handle-event":
        return asyncio.run(run_handle_event(args.record))

    elif args.command == "tidy":
        return asyncio.run(run_tidy())

    parser.print_help()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
