"""Tests for sync options, tag resolution and tuning validation."""

import pytest

from tuneshelf.core.config import settings
from tuneshelf.core.sync_config import ALL_TAGS, SyncConfig, SyncOptions, resolve_tags


class TestResolveTags:
    def test_empty_request_means_all_tags(self):
        assert resolve_tags([]) == frozenset(ALL_TAGS)
        assert resolve_tags(None) == frozenset(ALL_TAGS)

    def test_unknown_tags_are_dropped(self):
        assert resolve_tags(["title", "bogus"]) == {"title", "mtime"}

    def test_wholly_invalid_request_means_all_tags(self):
        assert resolve_tags(["bogus", "nope"]) == frozenset(ALL_TAGS)

    def test_mtime_always_included(self):
        assert "mtime" in resolve_tags(["album"])

    def test_names_are_case_insensitive(self):
        assert resolve_tags([" Title ", "ALBUM"]) == {"title", "album", "mtime"}


class TestSyncConfig:
    def test_defaults(self):
        config = SyncConfig()
        assert config.max_concurrent_files == 10
        assert config.extraction_workers == 8
        assert config.commit_interval == 100
        assert config.max_failures == settings.SYNC_MAX_FAILURES

    def test_extraction_workers_scale_with_concurrency(self):
        assert SyncConfig(max_concurrent_files=2).extraction_workers == 4

    @pytest.mark.parametrize(
        "field",
        ["max_concurrent_files", "commit_interval", "progress_update_interval",
         "delete_chunk_size", "max_failures"],
    )
    def test_rejects_non_positive_values(self, field):
        with pytest.raises(ValueError, match=field):
            SyncConfig(**{field: 0})


class TestSyncOptions:
    def test_defaults_sync_everything(self):
        options = SyncOptions()
        assert options.tags == frozenset(ALL_TAGS)
        assert options.force is False
        assert options.substitutions == ()
        assert options.timeout == 0

    def test_create_falls_back_to_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "SYNC_TAGS", ["title"])
        monkeypatch.setattr(settings, "SYNC_SUBSTITUTIONS", ["/a", "/b"])
        monkeypatch.setattr(settings, "SYNC_TIMEOUT", 30.0)

        options = SyncOptions.create()

        assert options.tags == {"title", "mtime"}
        assert options.substitutions == ("/a", "/b")
        assert options.timeout == 30.0

    def test_explicit_values_win(self, monkeypatch):
        monkeypatch.setattr(settings, "SYNC_TAGS", ["title"])
        options = SyncOptions.create(tags=["album"], force=True, substitutions=[], timeout=0)

        assert options.tags == {"album", "mtime"}
        assert options.force is True
        assert options.substitutions == ()
        assert options.tag_list == ["album", "mtime"]
