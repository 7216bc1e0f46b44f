import datetime
import shutil
from typing import Any

from loguru import logger
from sqlalchemy import Engine, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tuneshelf.core.config import settings
from tuneshelf.core.entities import (
    UNKNOWN_ALBUM_ID,
    UNKNOWN_ALBUM_NAME,
    UNKNOWN_ARTIST_ID,
    UNKNOWN_ARTIST_NAME,
    VARIOUS_ARTISTS_ID,
    VARIOUS_ARTISTS_NAME,
)
from tuneshelf.core.models import Album, Artist, Base, User


def enable_sqlite_savepoints(async_engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so per-item SAVEPOINTs behave on SQLite.

    The sqlite3 driver otherwise issues its own implicit BEGIN and breaks
    nested transactions.
    """
    if async_engine.dialect.name != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


# busy_timeout lets SQLite wait instead of failing immediately with "database is locked"
engine = create_async_engine(
    settings.DB_URL,
    echo=settings.DB_ECHO,
    connect_args={"check_same_thread": False, "timeout": 30},
)
enable_sqlite_savepoints(engine)


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Sets performance pragmas for SQLite.

    WAL mode lets the watcher and a full sync read while the other writes.
    """
    if settings.DB_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=30000")  # 30 seconds
        cursor.close()


AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


async def backup_db() -> None:
    """Create a point-in-time copy of the database file before destructive work."""
    src = settings.DB_PATH
    if not src.exists():
        return

    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    dst = src.parent / f"{settings.DB_NAME}.{timestamp}.bak"

    try:
        shutil.copy2(src, dst)
        logger.info(f"Database backed up to {dst}")

        # Keep the last N backups
        max_backups = settings.DB_BACKUP_RETENTION
        backups = sorted(src.parent.glob(f"{settings.DB_NAME}.*.bak"))
        if len(backups) > max_backups:
            for b in backups[:-max_backups]:
                b.unlink()
    except (OSError, shutil.Error) as e:
        logger.error(f"Failed to backup database: {e}")


async def seed_sentinels(session: AsyncSession) -> None:
    """Insert the reserved artists/album and the default admin if missing."""
    if await session.get(Artist, UNKNOWN_ARTIST_ID) is None:
        session.add(Artist(id=UNKNOWN_ARTIST_ID, name=UNKNOWN_ARTIST_NAME))
    if await session.get(Artist, VARIOUS_ARTISTS_ID) is None:
        session.add(Artist(id=VARIOUS_ARTISTS_ID, name=VARIOUS_ARTISTS_NAME))
    await session.flush()
    if await session.get(Album, UNKNOWN_ALBUM_ID) is None:
        session.add(
            Album(
                id=UNKNOWN_ALBUM_ID,
                artist_id=UNKNOWN_ARTIST_ID,
                name=UNKNOWN_ALBUM_NAME,
            )
        )
    if await session.get(User, 1) is None:
        session.add(User(id=1, name=settings.ADMIN_NAME, is_admin=True))
    await session.commit()


async def init_db(force: bool = False, bind: AsyncEngine = engine) -> None:
    """Create tables for the current models and seed sentinel rows.

    Args:
        force: Drop every table first. Total data loss; a backup is taken.
        bind: Engine to initialize (tests pass their own).
    """
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    if force:
        logger.warning("FORCED database initialization. Existing data might be lost.")
        await backup_db()

    async with bind.begin() as conn:
        if force:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        await seed_sentinels(session)
    logger.info("Database tables ready.")
