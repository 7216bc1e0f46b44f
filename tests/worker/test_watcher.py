"""Tests for watch-record handling."""

import asyncio

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    FileClosedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from tuneshelf.core.exceptions import CatalogUnavailableError, PersistenceError
from tuneshelf.core.identity import track_id_for
from tuneshelf.core.sync_config import SyncOptions
from tuneshelf.worker.watcher import (
    LibraryWatcher,
    WatchEvent,
    WatchEventHandler,
    WatchKind,
    WatchRecord,
    records_from_fs_event,
)


@pytest.fixture
def handler(catalog, tag_reader, sync_config, events):
    h = WatchEventHandler(catalog, tag_reader, sync_config, events, SyncOptions())
    yield h
    h.reconciler.close()


def file_record(path, event):
    return WatchRecord(str(path), WatchKind.FILE, event)


@pytest.mark.parametrize(
    "line,expected",
    [
        ("CLOSE_WRITE,CLOSE /m/a.mp3", ("/m/a.mp3", WatchKind.FILE, WatchEvent.MODIFIED)),
        ("CREATE /m/a b.mp3", ("/m/a b.mp3", WatchKind.FILE, WatchEvent.CREATED)),
        ("MOVED_TO /m/a.mp3", ("/m/a.mp3", WatchKind.FILE, WatchEvent.CREATED)),
        ("MOVED_FROM /m/a.mp3", ("/m/a.mp3", WatchKind.FILE, WatchEvent.DELETED)),
        ("DELETE,ISDIR /m/Album", ("/m/Album", WatchKind.DIRECTORY, WatchEvent.DELETED)),
        ("CREATE,ISDIR /m/Album", ("/m/Album", WatchKind.DIRECTORY, WatchEvent.CREATED)),
    ],
)
def test_parse_inotify_line(line, expected):
    record = WatchRecord.from_inotify(line)

    assert (record.path, record.kind, record.event) == expected


@pytest.mark.parametrize("line", ["", "DELETE", "ACCESS /m/a.mp3"])
def test_rejects_bad_inotify_lines(line):
    with pytest.raises(ValueError):
        WatchRecord.from_inotify(line)


def test_translates_watchdog_events():
    moved = records_from_fs_event(FileMovedEvent("/m/old.mp3", "/m/new.mp3"))

    assert moved == [
        WatchRecord("/m/old.mp3", WatchKind.FILE, WatchEvent.DELETED),
        WatchRecord("/m/new.mp3", WatchKind.FILE, WatchEvent.CREATED),
    ]
    assert records_from_fs_event(FileDeletedEvent("/m/a.mp3")) == [
        WatchRecord("/m/a.mp3", WatchKind.FILE, WatchEvent.DELETED)
    ]
    assert records_from_fs_event(FileModifiedEvent("/m/a.mp3"))[0].event is WatchEvent.MODIFIED
    assert records_from_fs_event(FileClosedEvent("/m/a.mp3"))[0].event is WatchEvent.MODIFIED
    assert records_from_fs_event(DirCreatedEvent("/m/New"))[0].kind is WatchKind.DIRECTORY
    assert records_from_fs_event(DirModifiedEvent("/m")) == []


async def test_deleting_unknown_file_is_a_no_op(handler, events, music_dir):
    changed = await handler.handle(file_record(music_dir / "never-seen.mp3", WatchEvent.DELETED))

    assert changed is False
    assert events.emitted == 0


async def test_created_file_is_added(handler, catalog, events, add_file):
    path = add_file("new.mp3", artist="Someone", album="Something")

    changed = await handler.handle(file_record(path, WatchEvent.CREATED))

    assert changed is True
    assert await catalog.tracks.get(track_id_for(path)) is not None
    assert events.emitted == 1


async def test_modified_without_changes_emits_nothing(handler, events, add_file):
    path = add_file("a.mp3", mtime=1.0)
    await handler.handle(file_record(path, WatchEvent.CREATED))

    changed = await handler.handle(file_record(path, WatchEvent.MODIFIED))

    assert changed is False
    assert events.emitted == 1


async def test_modified_with_new_tags_updates(handler, catalog, tag_reader, events, add_file):
    path = add_file("a.mp3", title="Old", mtime=1.0)
    await handler.handle(file_record(path, WatchEvent.CREATED))
    tag_reader.set(path, title="New", mtime=2.0)

    assert await handler.handle(file_record(path, WatchEvent.MODIFIED)) is True
    assert (await catalog.tracks.get(track_id_for(path))).title == "New"
    assert events.emitted == 2


async def test_non_media_file_is_ignored(handler, tag_reader, events, music_dir):
    notes = music_dir / "notes.txt"
    notes.touch()

    assert await handler.handle(file_record(notes, WatchEvent.CREATED)) is False
    assert tag_reader.calls == []
    assert events.emitted == 0


async def test_deleted_file_is_removed_and_tidied(handler, catalog, events, add_file):
    path = add_file("a.mp3", artist="Solo", album="Single")
    await handler.handle(file_record(path, WatchEvent.CREATED))

    changed = await handler.handle(file_record(path, WatchEvent.DELETED))

    assert changed is True
    assert await catalog.tracks.get(track_id_for(path)) is None
    assert await catalog.artists.find("Solo") is None
    assert events.emitted == 2


async def test_deleted_directory_removes_everything_beneath(handler, catalog, events, add_file, music_dir):
    inside = [add_file("Album/1.mp3"), add_file("Album/CD2/2.mp3")]
    sibling = add_file("Album 2/3.mp3")
    for path in inside + [sibling]:
        await handler.handle(file_record(path, WatchEvent.CREATED))
    emitted = events.emitted

    changed = await handler.handle(
        WatchRecord(str(music_dir / "Album"), WatchKind.DIRECTORY, WatchEvent.DELETED)
    )

    assert changed is True
    assert events.emitted == emitted + 1
    # The prefix carries a trailing slash, so "Album 2" is not matched
    assert await catalog.tracks.all_ids() == {track_id_for(sibling)}


async def test_created_directory_is_scanned(handler, catalog, events, add_file, music_dir):
    paths = [add_file("Dropped/1.mp3"), add_file("Dropped/2.flac")]

    changed = await handler.handle(
        WatchRecord(str(music_dir / "Dropped"), WatchKind.DIRECTORY, WatchEvent.CREATED)
    )

    assert changed is True
    assert await catalog.tracks.all_ids() == {track_id_for(p) for p in paths}
    assert events.emitted == 1


async def test_unreadable_created_file_changes_nothing(handler, catalog, tag_reader, events, music_dir):
    path = music_dir / "broken.mp3"
    path.touch()
    tag_reader.fail(path)

    assert await handler.handle(file_record(path, WatchEvent.CREATED)) is False
    assert await catalog.tracks.all_ids() == set()
    assert events.emitted == 0


async def test_watcher_drains_in_order_and_survives_bad_records(memory_catalog, tag_reader, add_file, music_dir):
    handler = WatchEventHandler(memory_catalog, tag_reader, options=SyncOptions())
    watcher = LibraryWatcher(music_dir, handler)
    path = add_file("a.mp3")
    handled = []
    original = handler.handle

    async def tracking(record):
        handled.append(record.event)
        if record.event is WatchEvent.MODIFIED:
            raise ValueError("unsupported")
        return await original(record)

    handler.handle = tracking
    for event in (WatchEvent.CREATED, WatchEvent.MODIFIED, WatchEvent.DELETED):
        watcher.queue.put_nowait(file_record(path, event))

    drain = asyncio.create_task(watcher.drain())
    await asyncio.wait_for(watcher.queue.join(), timeout=5)
    drain.cancel()
    handler.reconciler.close()

    assert handled == [WatchEvent.CREATED, WatchEvent.MODIFIED, WatchEvent.DELETED]
    assert await memory_catalog.tracks.all_ids() == set()


async def test_watcher_survives_persistence_errors(memory_catalog, tag_reader, add_file, music_dir, monkeypatch):
    handler = WatchEventHandler(memory_catalog, tag_reader, options=SyncOptions())
    watcher = LibraryWatcher(music_dir, handler)
    old = add_file("old.mp3")
    await handler.handle(file_record(old, WatchEvent.CREATED))
    new = add_file("new.mp3")

    async def broken_delete(track_ids):
        raise PersistenceError("disk I/O error")

    monkeypatch.setattr(memory_catalog.tracks, "delete", broken_delete)
    watcher.queue.put_nowait(file_record(old, WatchEvent.DELETED))
    watcher.queue.put_nowait(file_record(new, WatchEvent.CREATED))

    drain = asyncio.create_task(watcher.drain())
    await asyncio.wait_for(watcher.queue.join(), timeout=5)
    assert not drain.done()
    drain.cancel()
    handler.reconciler.close()

    assert await memory_catalog.tracks.all_ids() == {track_id_for(old), track_id_for(new)}


async def test_watcher_stops_when_catalog_is_unavailable(memory_catalog, tag_reader, add_file, music_dir, monkeypatch):
    handler = WatchEventHandler(memory_catalog, tag_reader, options=SyncOptions())
    watcher = LibraryWatcher(music_dir, handler)
    path = add_file("a.mp3")

    async def gone(track_ids):
        raise CatalogUnavailableError("database is locked")

    monkeypatch.setattr(memory_catalog.tracks, "delete", gone)
    watcher.queue.put_nowait(file_record(path, WatchEvent.DELETED))

    with pytest.raises(CatalogUnavailableError):
        await asyncio.wait_for(watcher.drain(), timeout=5)
    handler.reconciler.close()
