import os
import tempfile

# Keep the settings singleton (and its log/db files) out of the source tree
os.environ.setdefault("TUNESHELF_DATA_DIR", tempfile.mkdtemp(prefix="tuneshelf-test-"))

from pathlib import Path
from typing import Dict, List, Union

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tuneshelf.catalog.memory import MemoryCatalog
from tuneshelf.catalog.sql import SqlCatalog
from tuneshelf.core.db import enable_sqlite_savepoints, init_db
from tuneshelf.core.events import CatalogEvents
from tuneshelf.core.exceptions import TagExtractionError
from tuneshelf.core.identity import normalize_path
from tuneshelf.core.sync_config import SyncConfig
from tuneshelf.core.task_store import TaskStore
from tuneshelf.worker.tags import TagInfo


class FakeTagReader:
    """Tag reader serving canned TagInfo per path; unknown paths fail to read."""

    def __init__(self) -> None:
        self.tags: Dict[str, TagInfo] = {}
        self.failures: Dict[str, str] = {}
        self.calls: List[str] = []

    def set(self, path: Union[str, Path], **fields) -> str:
        norm = normalize_path(path)
        fields.setdefault("title", Path(path).stem)
        self.tags[norm] = TagInfo(**fields)
        self.failures.pop(norm, None)
        return norm

    def fail(self, path: Union[str, Path], reason: str = "corrupt file") -> str:
        norm = normalize_path(path)
        self.failures[norm] = reason
        return norm

    def extract(self, path: Union[str, Path]) -> TagInfo:
        norm = normalize_path(path)
        self.calls.append(norm)
        if norm in self.failures:
            raise TagExtractionError(norm, self.failures[norm])
        if norm not in self.tags:
            raise TagExtractionError(norm, "no such file")
        return self.tags[norm]


def add_media(root: Path, reader: FakeTagReader, relpath: str, **fields) -> str:
    """Create an (empty) media file under ``root`` and register its tags."""
    path = root / relpath
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()
    return reader.set(path, **fields)


@pytest.fixture
def tag_reader():
    return FakeTagReader()


@pytest.fixture
def memory_catalog():
    return MemoryCatalog()


@pytest.fixture
def task_store():
    """Isolated TaskStore instance."""
    return TaskStore()


@pytest.fixture
def events():
    return CatalogEvents()


@pytest.fixture
def sync_config():
    """Small batches so commit and progress paths are exercised."""
    return SyncConfig(max_concurrent_files=4, commit_interval=2, progress_update_interval=1)


@pytest.fixture
async def sql_engine():
    """In-memory SQLite with tables and sentinel rows."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def sql_session(sql_engine):
    maker = async_sessionmaker(
        bind=sql_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with maker() as session:
        yield session


@pytest.fixture
def sql_catalog(sql_session):
    return SqlCatalog(sql_session)


@pytest.fixture
def music_dir(tmp_path):
    root = tmp_path / "music"
    root.mkdir()
    return root


@pytest.fixture
def add_file(music_dir, tag_reader):
    """Factory: add_file("Artist/Album/01.mp3", artist=..., album=...) -> normalized path."""

    def _add(relpath: str, **fields) -> str:
        return add_media(music_dir, tag_reader, relpath, **fields)

    return _add


@pytest.fixture(params=["memory", "sql"])
async def catalog(request, sql_engine):
    """Runs the test against both catalog implementations."""
    if request.param == "memory":
        yield MemoryCatalog()
        return
    maker = async_sessionmaker(
        bind=sql_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with maker() as session:
        yield SqlCatalog(session)
