"""Tests for full library synchronization."""

import os
import plistlib
import time

import pytest

from tuneshelf.core.entities import UNKNOWN_ALBUM_ID, UNKNOWN_ARTIST_ID, VARIOUS_ARTISTS_ID
from tuneshelf.core.exceptions import CatalogUnavailableError
from tuneshelf.core.identity import track_id_for
from tuneshelf.core.stats import ManifestStatus
from tuneshelf.core.sync_config import SyncConfig, SyncOptions
from tuneshelf.worker.orchestrator import LibrarySynchronizer


class RecordingObserver:
    def __init__(self):
        self.items = []
        self.playlists = []
        self.completed = []

    def on_item(self, result):
        self.items.append(result)

    def on_playlist(self, result):
        self.playlists.append(result)

    def on_complete(self, stats):
        self.completed.append(stats)


@pytest.fixture
def make_synchronizer(tag_reader, sync_config, task_store, events):
    created = []

    def _make(catalog, **kwargs):
        kwargs.setdefault("config", sync_config)
        s = LibrarySynchronizer(
            catalog, tag_reader, task_store=task_store, events=events, **kwargs
        )
        created.append(s)
        return s

    yield _make
    for s in created:
        s.close()


def write_manifest(path, tracks, playlists=()):
    data = {
        "Tracks": {
            str(tid): {"Track ID": tid, "Location": location}
            for tid, location in tracks.items()
        },
        "Playlists": list(playlists),
    }
    with open(path, "wb") as f:
        plistlib.dump(data, f)
    return path


async def test_first_sync_creates_everything(catalog, make_synchronizer, add_file, music_dir, events):
    a = add_file("Band/Record/01.mp3", artist="Band", album="Record")
    b = add_file("Band/Record/02.mp3", artist="Band", album="Record")
    c = add_file("loose.ogg")
    (music_dir / "cover.jpg").touch()

    stats = await make_synchronizer(catalog).sync(music_dir, SyncOptions())

    assert (stats.created, stats.updated, stats.unchanged, stats.failed) == (3, 0, 0, 0)
    assert stats.deleted == 0
    assert await catalog.tracks.all_ids() == {track_id_for(p) for p in (a, b, c)}
    assert events.emitted == 1


async def test_resync_is_idempotent(catalog, make_synchronizer, add_file, music_dir, events):
    add_file("a.mp3", artist="X", album="Y", mtime=1.0)
    add_file("b.mp3", artist="X", album="Y", mtime=1.0)
    synchronizer = make_synchronizer(catalog)
    await synchronizer.sync(music_dir, SyncOptions())

    stats = await synchronizer.sync(music_dir, SyncOptions())

    assert (stats.created, stats.updated, stats.unchanged, stats.deleted) == (0, 0, 2, 0)
    assert not stats.changed
    # A full sync always notifies once
    assert events.emitted == 2


async def test_removed_file_is_swept_and_tidied(catalog, make_synchronizer, tag_reader, add_file, music_dir):
    keep = add_file("keep.mp3", artist="Stays", album="Kept")
    gone = add_file("gone.mp3", artist="Leaves", album="Lost")
    synchronizer = make_synchronizer(catalog)
    await synchronizer.sync(music_dir, SyncOptions())
    leaving = await catalog.artists.find("Leaves")
    lost = await catalog.albums.find(leaving.id, "Lost")

    os.remove(gone)
    del tag_reader.tags[gone]
    stats = await synchronizer.sync(music_dir, SyncOptions())

    assert stats.deleted == 1
    assert await catalog.tracks.all_ids() == {track_id_for(keep)}
    assert await catalog.artists.find("Leaves") is None
    assert await catalog.albums.get(lost.id) is None
    assert await catalog.artists.find("Stays") is not None
    for artist_id in (UNKNOWN_ARTIST_ID, VARIOUS_ARTISTS_ID):
        assert await catalog.artists.get(artist_id) is not None
    assert await catalog.albums.get(UNKNOWN_ALBUM_ID) is not None


async def test_unreadable_existing_track_survives_until_threshold(
    catalog, make_synchronizer, tag_reader, add_file, music_dir
):
    path = add_file("flaky.mp3")
    synchronizer = make_synchronizer(
        catalog, config=SyncConfig(max_concurrent_files=2, max_failures=2)
    )
    await synchronizer.sync(music_dir, SyncOptions())
    tag_reader.fail(path)

    first = await synchronizer.sync(music_dir, SyncOptions())
    assert (first.failed, first.deleted) == (1, 0)
    assert await catalog.tracks.get(track_id_for(path)) is not None

    second = await synchronizer.sync(music_dir, SyncOptions())
    assert (second.failed, second.deleted) == (1, 1)
    assert await catalog.tracks.get(track_id_for(path)) is None


async def test_unreadable_new_file_is_reported(catalog, make_synchronizer, tag_reader, music_dir):
    broken = music_dir / "broken.mp3"
    broken.touch()
    tag_reader.fail(broken, "bad header")

    stats = await make_synchronizer(catalog).sync(music_dir, SyncOptions())

    assert stats.failed == 1
    assert stats.failures == [(str(broken), "bad header")]
    assert await catalog.tracks.all_ids() == set()


class ExplodingTagReader:
    """Raises a bare parser error for one path, delegates the rest."""

    def __init__(self, inner, broken):
        self.inner = inner
        self.broken = broken

    def extract(self, path):
        if path == self.broken:
            raise ValueError("sync byte not found")
        return self.inner.extract(path)


async def test_unexpected_reader_error_does_not_abort_sync(memory_catalog, tag_reader, add_file, music_dir, task_store):
    good = add_file("good.mp3")
    broken = add_file("broken.mp3")
    synchronizer = LibrarySynchronizer(
        memory_catalog, ExplodingTagReader(tag_reader, broken), task_store=task_store
    )
    task_store.create_task("t4", "sync")

    stats = await synchronizer.sync(music_dir, SyncOptions(), task_id="t4")
    synchronizer.close()

    assert (stats.created, stats.failed) == (1, 1)
    assert stats.failures == [(broken, "ValueError: sync byte not found")]
    assert await memory_catalog.tracks.all_ids() == {track_id_for(good)}
    assert task_store.get_task("t4").status == "completed"


async def test_commits_in_batches(memory_catalog, make_synchronizer, add_file, music_dir):
    for i in range(4):
        add_file(f"{i}.mp3")

    await make_synchronizer(memory_catalog).sync(music_dir, SyncOptions())

    # Every 2 items, plus the final commit
    assert memory_catalog.commits == 3


async def test_observer_and_task_progress(memory_catalog, make_synchronizer, add_file, music_dir, task_store):
    for i in range(3):
        add_file(f"{i}.mp3")
    observer = RecordingObserver()
    task_store.create_task("t1", "sync")

    stats = await make_synchronizer(memory_catalog, observer=observer).sync(
        music_dir, SyncOptions(), task_id="t1"
    )

    assert len(observer.items) == 3
    assert observer.completed == [stats]
    task = task_store.get_task("t1")
    assert task.status == "completed"
    assert task.result["created"] == 3


async def test_cancelled_run_skips_sweep(memory_catalog, make_synchronizer, tag_reader, add_file, music_dir, task_store, events):
    path = add_file("a.mp3")
    synchronizer = make_synchronizer(memory_catalog)
    await synchronizer.sync(music_dir, SyncOptions())
    os.remove(path)
    del tag_reader.tags[path]
    task_store.create_task("t2", "sync")
    task_store.cancel_task("t2")

    stats = await synchronizer.sync(music_dir, SyncOptions(), task_id="t2")

    assert stats.cancelled
    assert stats.deleted == 0
    assert await memory_catalog.tracks.get(track_id_for(path)) is not None
    assert task_store.get_task("t2").status == "cancelled"
    assert events.emitted == 1


class SlowTagReader:
    def __init__(self, inner, delay):
        self.inner = inner
        self.delay = delay

    def extract(self, path):
        time.sleep(self.delay)
        return self.inner.extract(path)


async def test_time_budget_stops_like_cancellation(memory_catalog, tag_reader, add_file, music_dir, task_store):
    for i in range(5):
        add_file(f"{i}.mp3")
    synchronizer = LibrarySynchronizer(
        memory_catalog,
        SlowTagReader(tag_reader, 0.05),
        config=SyncConfig(max_concurrent_files=1),
        task_store=task_store,
    )

    stats = await synchronizer.sync(music_dir, SyncOptions(timeout=0.01))
    synchronizer.close()

    assert stats.cancelled
    assert 1 <= stats.processed < 5
    assert stats.deleted == 0


async def test_missing_source(memory_catalog, make_synchronizer, tmp_path, events):
    stats = await make_synchronizer(memory_catalog).sync(tmp_path / "nowhere", SyncOptions())

    assert stats.processed == 0
    assert stats.failures[0][1] == "source not found"
    assert events.emitted == 0


async def test_unavailable_catalog_aborts_and_rolls_back(
    memory_catalog, make_synchronizer, add_file, music_dir, task_store, events, monkeypatch
):
    add_file("a.mp3")

    async def unavailable():
        raise CatalogUnavailableError("database is locked")

    monkeypatch.setattr(memory_catalog.tracks, "all_ids", unavailable)
    task_store.create_task("t3", "sync")

    with pytest.raises(CatalogUnavailableError):
        await make_synchronizer(memory_catalog).sync(music_dir, SyncOptions(), task_id="t3")

    # The created track was never committed
    assert memory_catalog.store.tracks == {}
    assert task_store.get_task("t3").status == "failed"
    assert events.emitted == 0


async def test_manifest_import_with_substitutions_and_playlists(
    catalog, make_synchronizer, add_file, music_dir, tmp_path
):
    one = add_file("My Song.mp3", artist="A", mtime=1.0)
    two = add_file("Other.mp3", artist="B", mtime=1.0)
    manifest = write_manifest(
        tmp_path / "Library.xml",
        {
            1: "file:///Old/Music/My%20Song.mp3",
            2: "file:///Old/Music/Other.mp3",
            3: "file:///Old/Music/Missing.mp3",
        },
        [
            {"Name": "Library", "Playlist ID": 10, "Visible": False,
             "Playlist Items": [{"Track ID": 1}, {"Track ID": 2}]},
            {"Name": "Road trip", "Playlist ID": 11,
             "Playlist Items": [{"Track ID": 2}, {"Track ID": 1}, {"Track ID": 3}]},
        ],
    )
    options = SyncOptions(substitutions=("/Old/Music", str(music_dir)))

    stats = await make_synchronizer(catalog).sync(manifest, options)

    assert stats.manifest_status is ManifestStatus.OK
    assert (stats.created, stats.failed) == (2, 1)
    assert stats.playlists_processed == 2
    assert (await catalog.tracks.get(track_id_for(one))).external_id == 1
    [playlist] = await catalog.playlists.list_for_user(1)
    assert playlist.name == "Road trip"
    assert playlist.external_id == 11
    assert await catalog.playlists.track_ids(playlist.id) == {
        track_id_for(one),
        track_id_for(two),
    }


async def test_manifest_playlist_removed_on_next_import(catalog, make_synchronizer, add_file, music_dir, tmp_path):
    add_file("a.mp3")
    location = {1: "file://" + str(music_dir / "a.mp3")}
    listed = {"Name": "Mix", "Playlist ID": 7, "Playlist Items": [{"Track ID": 1}]}
    synchronizer = make_synchronizer(catalog)
    await synchronizer.sync(write_manifest(tmp_path / "v1.xml", location, [listed]), SyncOptions())

    stats = await synchronizer.sync(write_manifest(tmp_path / "v2.xml", location), SyncOptions())

    assert stats.playlists_deleted == 1
    assert await catalog.playlists.list_for_user(1) == []


async def test_malformed_manifest_keeps_catalog(catalog, make_synchronizer, add_file, music_dir, tmp_path, events):
    path = add_file("a.mp3")
    synchronizer = make_synchronizer(catalog)
    await synchronizer.sync(music_dir, SyncOptions())
    bad = tmp_path / "bad.xml"
    with open(bad, "wb") as f:
        plistlib.dump({"Playlists": []}, f)

    stats = await synchronizer.sync(bad, SyncOptions())

    assert stats.manifest_status is ManifestStatus.MALFORMED
    assert stats.deleted == 0
    assert await catalog.tracks.get(track_id_for(path)) is not None
    assert events.emitted == 1


async def test_invalid_substitutions_are_ignored(memory_catalog, make_synchronizer, add_file, music_dir, tmp_path):
    path = add_file("a.mp3")
    manifest = write_manifest(tmp_path / "lib.xml", {5: "file://" + path})

    stats = await make_synchronizer(memory_catalog).sync(
        manifest, SyncOptions(substitutions=("/nowhere",))
    )

    assert stats.created == 1
