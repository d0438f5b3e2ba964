"""Tests for the local artifact store state machine and signed URLs."""

from datetime import datetime, timedelta

import pytest

from conftest import FakeClock
from page_pipeline.artifact_store import LocalArtifactStore, SignedUrlCache
from page_pipeline.errors import AssetStateError, ConfigurationError, UploadFailure
from page_pipeline.models import AssetStatus

FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture
def store(storage_settings):
    return LocalArtifactStore(storage_settings, secret="test-secret", now=lambda: FIXED_NOW)


class TestAssetStateMachine:
    def test_begin_generation_creates_generating_asset(self, store):
        generation_id = store.begin_generation("asset-1", max_attempts=12, prompt_hash="abc")

        asset = store.get_asset("asset-1")
        assert asset.status == AssetStatus.GENERATING
        assert asset.generation_id == generation_id
        assert asset.attempts == 0
        assert asset.max_attempts == 12
        assert asset.prompt_hash == "abc"

    def test_begin_generation_rejected_while_generating(self, store):
        store.begin_generation("asset-1", max_attempts=12)

        with pytest.raises(AssetStateError):
            store.begin_generation("asset-1", max_attempts=12)

    def test_forced_begin_generation_resets_counter(self, store):
        first = store.begin_generation("asset-1", max_attempts=12)
        store.create_or_update_asset("asset-1", AssetStatus.GENERATING, 4, generation_id=first)

        second = store.begin_generation("asset-1", max_attempts=12, force=True)

        assert second != first
        assert store.get_asset("asset-1").attempts == 0

    def test_regeneration_after_terminal_status(self, store):
        first = store.begin_generation("asset-1", max_attempts=3)
        store.create_or_update_asset("asset-1", AssetStatus.FAILED, 3, last_error="boom", generation_id=first)

        second = store.begin_generation("asset-1", max_attempts=3)

        asset = store.get_asset("asset-1")
        assert second != first
        assert asset.status == AssetStatus.GENERATING
        assert asset.last_error is None

    def test_stale_generation_update_rejected(self, store):
        stale = store.begin_generation("asset-1", max_attempts=12)
        store.begin_generation("asset-1", max_attempts=12, force=True)

        with pytest.raises(AssetStateError, match="stale"):
            store.create_or_update_asset("asset-1", AssetStatus.GENERATING, 1, generation_id=stale)

    def test_update_after_terminal_rejected(self, store):
        generation_id = store.begin_generation("asset-1", max_attempts=12)
        store.create_or_update_asset("asset-1", AssetStatus.READY, 1, storage_path="p.png",
                                     generation_id=generation_id)

        with pytest.raises(AssetStateError):
            store.create_or_update_asset("asset-1", AssetStatus.FAILED, 2, generation_id=generation_id)

    def test_generating_only_through_begin_generation(self, store):
        store.create_or_update_asset("asset-1", AssetStatus.DRAFT, 0)

        with pytest.raises(AssetStateError):
            store.create_or_update_asset("asset-1", AssetStatus.GENERATING, 1)

    def test_draft_cannot_jump_to_ready(self, store):
        store.create_or_update_asset("asset-1", AssetStatus.DRAFT, 0)

        with pytest.raises(AssetStateError):
            store.create_or_update_asset("asset-1", AssetStatus.READY, 0)

    def test_records_survive_reload(self, store, storage_settings):
        generation_id = store.begin_generation("asset-1", max_attempts=12)
        expires_at = FIXED_NOW + timedelta(hours=72)
        store.create_or_update_asset("asset-1", AssetStatus.READY, 2, storage_path="u/p/pages/page-1.png",
                                     expires_at=expires_at, generation_id=generation_id, file_size=123)

        reloaded = LocalArtifactStore(storage_settings, secret="test-secret").get_asset("asset-1")

        assert reloaded.status == AssetStatus.READY
        assert reloaded.attempts == 2
        assert reloaded.expires_at == expires_at
        assert reloaded.file_size == 123

    def test_get_asset_returns_snapshot(self, store):
        store.begin_generation("asset-1", max_attempts=12)
        snapshot = store.get_asset("asset-1")
        snapshot.attempts = 99

        assert store.get_asset("asset-1").attempts == 0


class TestBinaries:
    def test_upload_overwrites_single_binary(self, store, storage_settings):
        store.upload_binary("generated", "u/p/pages/page-1.png", b"first")
        path = store.upload_binary("generated", "u/p/pages/page-1.png", b"second")

        assert path == "u/p/pages/page-1.png"
        assert store.read_binary("generated", path) == b"second"

    @pytest.mark.parametrize("path", ["../escape.png", "/abs.png", ""])
    def test_upload_rejects_paths_outside_bucket(self, store, path):
        with pytest.raises(UploadFailure):
            store.upload_binary("generated", path, b"data")

    def test_purge_expired_removes_binary(self, storage_settings):
        current = {'now': FIXED_NOW}
        store = LocalArtifactStore(storage_settings, secret="s", now=lambda: current['now'])
        generation_id = store.begin_generation("asset-1", max_attempts=1)
        store.upload_binary("generated", "page.png", b"data")
        store.create_or_update_asset("asset-1", AssetStatus.READY, 1, storage_path="page.png",
                                     expires_at=FIXED_NOW + timedelta(hours=72), generation_id=generation_id)

        assert store.purge_expired() == 0

        current['now'] = FIXED_NOW + timedelta(hours=73)
        assert store.purge_expired() == 1
        assert store.get_asset("asset-1").storage_path is None


class TestSignedUrls:
    def test_signed_url_verifies(self, store):
        store.upload_binary("generated", "u/p/pages/page-1.png", b"data")

        url = store.create_signed_url("generated", "u/p/pages/page-1.png", expires_in=3600)

        assert "signature=" in url
        assert store.verify_signed_url(url) is True
        assert store.verify_signed_url(url.replace("page-1", "page-2")) is False

    def test_signed_url_is_cached(self, store):
        store.upload_binary("generated", "page.png", b"data")

        assert store.create_signed_url("generated", "page.png") == store.create_signed_url("generated", "page.png")

    def test_missing_secret_is_configuration_error(self, storage_settings, monkeypatch):
        monkeypatch.delenv("PAGE_STORAGE_SECRET", raising=False)
        store = LocalArtifactStore(storage_settings)
        store.upload_binary("generated", "page.png", b"data")

        with pytest.raises(ConfigurationError):
            store.create_signed_url("generated", "page.png")


class TestSignedUrlCache:
    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = SignedUrlCache(ttl_seconds=300, clock=clock)
        cache.put("generated", "page.png", "url-1")

        clock.advance(299)
        assert cache.get("generated", "page.png") == "url-1"

        clock.advance(1)
        assert cache.get("generated", "page.png") is None

    def test_invalidate(self):
        cache = SignedUrlCache(ttl_seconds=300, clock=FakeClock())
        cache.put("generated", "page.png", "url-1")
        cache.invalidate("generated", "page.png")

        assert cache.get("generated", "page.png") is None
