"""
Cache orchestrator: lookup order, store, promotion, post-playback release.
Runs against a real SQLite file and the in-memory FakeRemoteStore.
"""
import errno
import json
import os
import time
from pathlib import Path

import pytest

from app.services import cache as cache_module
from app.services import orchestrator as orchestrator_module
from app.services.models import CacheMetadata
from app.utils.url_parser import ServiceType

YT = ServiceType.YOUTUBE
VIDEO_ID = "dQw4w9WgXcQ"
URL = f"https://www.youtube.com/watch?v={VIDEO_ID}"


def _files(root: Path) -> list[Path]:
    return sorted(p for p in root.rglob("*") if p.is_file())


async def _store(orchestrator, audio_file, title="Never Gonna Give You Up"):
    ok = await orchestrator.store(URL, audio_file, CacheMetadata(title=title, url=URL), VIDEO_ID)
    assert ok
    return orchestrator.local.audio_path(YT, VIDEO_ID)


def _busy_unlink(monkeypatch, target: Path, times: int, error: OSError = None) -> dict:
    """Make Path.unlink fail for target the first `times` calls."""
    real_unlink = Path.unlink
    calls = {"failed": 0}

    def unlink(self, missing_ok=False):
        if self == target and calls["failed"] < times:
            calls["failed"] += 1
            raise error or PermissionError(errno.EBUSY, "Device or resource busy")
        return real_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", unlink)
    return calls


class _FullDisk:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def write(self, data):
        raise OSError(errno.ENOSPC, "No space left on device")


@pytest.mark.asyncio
class TestLookup:
    async def test_unknown_url_is_a_clean_miss(self, orchestrator, local_cache, index):
        url = "https://www.youtube.com/watch?v=abc12345678"

        assert await orchestrator.resolve_local_path(url) is None
        assert await orchestrator.resolve_local_path(url) is None

        assert _files(local_cache.root) == []
        assert await index.get("abc12345678", YT) is None

    async def test_store_then_resolve_returns_same_bytes(self, orchestrator, audio_file):
        await _store(orchestrator, audio_file)

        path = await orchestrator.resolve_local_path(URL, VIDEO_ID, YT)
        assert path is not None
        assert path.read_bytes() == audio_file.read_bytes()
        # caller keeps its temp file
        assert audio_file.exists()

    async def test_resolve_derives_identifier_from_url(self, orchestrator, audio_file):
        await _store(orchestrator, audio_file)
        path = await orchestrator.resolve_local_path(f"https://youtu.be/{VIDEO_ID}?si=share")
        assert path == orchestrator.local.audio_path(YT, VIDEO_ID)

    async def test_hit_touches_record(self, orchestrator, audio_file, index):
        await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        before = (await index.get(VIDEO_ID, YT)).access_count

        await orchestrator.resolve_local_path(URL)

        assert (await index.get(VIDEO_ID, YT)).access_count == before + 1

    async def test_backfills_missing_row_from_sidecar(self, orchestrator, local_cache, index):
        audio = local_cache.audio_path(YT, VIDEO_ID)
        audio.write_bytes(b"ID3 recovered")
        local_cache.metadata_path(YT, VIDEO_ID).write_text(
            json.dumps({"title": "Recovered", "url": URL, "duration": 213}), encoding="utf-8"
        )

        assert await orchestrator.resolve_local_path(URL) == audio

        record = await index.get(VIDEO_ID, YT)
        assert record.title == "Recovered"
        assert record.duration == 213
        assert record.file_size == len(b"ID3 recovered")

    async def test_corrupt_sidecar_is_ignored(self, orchestrator, local_cache, index):
        audio = local_cache.audio_path(YT, VIDEO_ID)
        audio.write_bytes(b"ID3 data")
        local_cache.metadata_path(YT, VIDEO_ID).write_text("{not json", encoding="utf-8")

        assert await orchestrator.resolve_local_path(URL) == audio

        record = await index.get(VIDEO_ID, YT)
        assert record.title is None
        assert record.file_size == len(b"ID3 data")

    async def test_materialises_from_nas(self, orchestrator, local_cache, index, remote):
        remote_path = remote.remote_path(YT, f"{VIDEO_ID}.mp3")
        remote.files[remote_path] = b"remote-audio-bytes"
        await index.upsert(VIDEO_ID, "From NAS", URL, YT, remote_path=remote_path)

        path = await orchestrator.resolve_local_path(URL)

        assert path == local_cache.audio_path(YT, VIDEO_ID)
        assert path.read_bytes() == b"remote-audio-bytes"
        assert not path.with_name(path.name + ".part").exists()
        assert local_cache.is_permanent(path.name)
        sidecar = await local_cache.read_metadata(local_cache.metadata_path(YT, VIDEO_ID))
        assert sidecar.title == "From NAS"

    async def test_local_write_error_closes_nas_stream(self, orchestrator, local_cache, index, remote, monkeypatch):
        remote_path = remote.remote_path(YT, f"{VIDEO_ID}.mp3")
        remote.files[remote_path] = b"remote-audio-bytes"
        await index.upsert(VIDEO_ID, "From NAS", URL, YT, remote_path=remote_path)

        closed = []
        original = remote.read_stream

        async def tracked(path, chunk_size=4):
            try:
                async for chunk in original(path, chunk_size):
                    yield chunk
            finally:
                closed.append(path)

        remote.read_stream = tracked
        monkeypatch.setattr(orchestrator_module.aiofiles, "open", lambda *a, **kw: _FullDisk())

        assert await orchestrator.resolve_local_path(URL) is None
        assert closed == [remote_path]
        path = local_cache.audio_path(YT, VIDEO_ID)
        assert not path.exists()
        assert not path.with_name(path.name + ".part").exists()

    async def test_missing_nas_file_is_soft_miss(self, orchestrator, index, remote):
        await index.upsert(VIDEO_ID, "Gone", URL, YT, remote_path=remote.remote_path(YT, f"{VIDEO_ID}.mp3"))
        assert await orchestrator.resolve_local_path(URL) is None

    async def test_nas_unavailable_falls_back_to_disk(self, orchestrator, local_cache, index, remote):
        await index.upsert(VIDEO_ID, "Song", URL, YT, remote_path="/cache/youtube/x.mp3")
        remote.available = False
        local_cache.audio_path(YT, VIDEO_ID).write_bytes(b"ID3 local")

        assert await orchestrator.resolve_local_path(URL) == local_cache.audio_path(YT, VIDEO_ID)


@pytest.mark.asyncio
class TestStore:
    async def test_writes_sidecar_and_row(self, orchestrator, audio_file, local_cache, index):
        await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()

        meta = await local_cache.read_metadata(local_cache.metadata_path(YT, VIDEO_ID))
        assert meta.title == "Never Gonna Give You Up"
        assert meta.identifier == VIDEO_ID
        assert meta.service == YT
        assert meta.file_size == audio_file.stat().st_size

        record = await index.get(VIDEO_ID, YT)
        assert record.title == "Never Gonna Give You Up"
        assert record.file_size == audio_file.stat().st_size

    async def test_marks_permanent(self, orchestrator, audio_file, local_cache):
        await _store(orchestrator, audio_file)
        assert local_cache.is_permanent(f"{VIDEO_ID}.mp3")
        assert local_cache.is_permanent(f"{VIDEO_ID}.meta.json")

    async def test_missing_source_fails(self, orchestrator, tmp_path):
        ok = await orchestrator.store(URL, tmp_path / "nope.mp3", CacheMetadata(title="x", url=URL), VIDEO_ID)
        assert ok is False

    async def test_interrupted_copy_is_not_a_hit(self, orchestrator, audio_file, local_cache, index, monkeypatch):
        def short_copy(src, dst):
            Path(dst).write_bytes(Path(src).read_bytes()[:100])
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(cache_module.shutil, "copyfile", short_copy)

        ok = await orchestrator.store(URL, audio_file, CacheMetadata(title="x", url=URL), VIDEO_ID)

        assert ok is False
        assert await orchestrator.resolve_local_path(URL) is None
        assert await index.get(VIDEO_ID, YT) is None
        assert _files(local_cache.root) == []

    async def test_interrupted_recopy_keeps_previous_file(self, orchestrator, audio_file, monkeypatch):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        original = path.read_bytes()

        def short_copy(src, dst):
            Path(dst).write_bytes(b"ID3")
            raise OSError(errno.EIO, "Input/output error")

        monkeypatch.setattr(cache_module.shutil, "copyfile", short_copy)
        replacement = audio_file.with_name("other.mp3")
        replacement.write_bytes(b"ID3 something else entirely")

        ok = await orchestrator.store(URL, replacement, CacheMetadata(title="x", url=URL), VIDEO_ID)

        assert ok is False
        assert path.read_bytes() == original
        assert not path.with_name(path.name + ".part").exists()


@pytest.mark.asyncio
class TestPromotion:
    async def test_store_is_promoted(self, orchestrator, audio_file, index, remote):
        await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()

        record = await index.get(VIDEO_ID, YT)
        expected = remote.remote_path(YT, f"{VIDEO_ID}.mp3")
        assert record.remote_path == expected
        assert record.is_processing is False
        assert await remote.exists(expected)
        assert remote.files[expected] == audio_file.read_bytes()

        sidecar = json.loads(remote.files[remote.remote_path(YT, f"{VIDEO_ID}.meta.json")])
        assert sidecar["remote_path"] == expected

    async def test_retries_and_reconnects(self, orchestrator, audio_file, index, remote):
        remote.fail_writes = 2
        await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()

        audio_path = remote.remote_path(YT, f"{VIDEO_ID}.mp3")
        assert remote.write_log.count(audio_path) == 3
        assert remote.reconnect_calls == 1
        assert (await index.get(VIDEO_ID, YT)).remote_path is not None

    async def test_gives_up_and_stays_retryable(self, orchestrator, audio_file, index, remote):
        remote.fail_writes = 100
        await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()

        record = await index.get(VIDEO_ID, YT)
        assert record.remote_path is None
        assert record.is_processing is False
        assert remote.write_attempts == 3
        assert not any(p.endswith(".meta.json") for p in remote.write_log)

    async def test_one_promotion_per_key(self, orchestrator, audio_file, remote):
        await _store(orchestrator, audio_file)
        first = orchestrator.promote(URL, VIDEO_ID, YT)
        second = orchestrator.promote(URL, VIDEO_ID, YT)
        assert first is second
        await orchestrator.wait_for_promotions()
        assert remote.write_log.count(remote.remote_path(YT, f"{VIDEO_ID}.mp3")) == 1
        assert not orchestrator.is_promoting(VIDEO_ID, YT)

    async def test_connects_when_unavailable(self, orchestrator, audio_file, remote):
        remote.available = False
        await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        assert remote.connect_calls == 1
        assert remote.files

    async def test_disabled_nas_skips_promotion(self, orchestrator, audio_file, remote):
        remote.enabled = False
        await _store(orchestrator, audio_file)
        assert not orchestrator.is_promoting(VIDEO_ID, YT)
        assert remote.write_attempts == 0


@pytest.mark.asyncio
class TestRelease:
    async def test_deletes_once_on_nas(self, orchestrator, audio_file, local_cache):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()

        assert await orchestrator.release_after_playback(URL) is True
        assert not path.exists()
        assert not local_cache.metadata_path(YT, VIDEO_ID).exists()

    async def test_never_deletes_while_processing(self, orchestrator, audio_file, index):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        await index.set_processing(VIDEO_ID, YT, True)

        assert await orchestrator.release_after_playback(URL, VIDEO_ID) is False
        assert path.exists()

    async def test_never_deletes_without_remote_path(self, orchestrator, audio_file, index, remote):
        remote.reachable = False
        remote.available = False
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        assert (await index.get(VIDEO_ID, YT)).remote_path is None

        assert await orchestrator.release_after_playback(URL, VIDEO_ID) is False
        assert path.exists()
        # a fresh upload was queued instead
        assert orchestrator.is_promoting(VIDEO_ID, YT)
        await orchestrator.wait_for_promotions()

    async def test_unconfirmed_nas_copy_keeps_file(self, orchestrator, audio_file, remote):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        remote.files.clear()

        assert await orchestrator.release_after_playback(URL) is False
        assert path.exists()

    async def test_busy_file_deleted_on_deferred_retry(self, orchestrator, audio_file, local_cache, monkeypatch):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        calls = _busy_unlink(monkeypatch, path, times=1)

        assert await orchestrator.release_after_playback(URL) is False
        assert path.exists()

        await local_cache.wait_for_deferred()
        assert calls["failed"] == 1
        assert not path.exists()
        assert not local_cache.metadata_path(YT, VIDEO_ID).exists()

    async def test_still_busy_after_retry_gives_up(self, orchestrator, audio_file, local_cache, monkeypatch):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        calls = _busy_unlink(monkeypatch, path, times=2)

        assert await orchestrator.release_after_playback(URL) is False
        await local_cache.wait_for_deferred()

        assert calls["failed"] == 2
        assert path.exists()
        assert local_cache.metadata_path(YT, VIDEO_ID).exists()
        assert not local_cache._deferred

    async def test_other_delete_errors_are_not_retried(self, orchestrator, audio_file, local_cache, monkeypatch):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        calls = _busy_unlink(monkeypatch, path, times=1, error=OSError(errno.EIO, "Input/output error"))

        assert await orchestrator.release_after_playback(URL) is False

        assert calls["failed"] == 1
        assert not local_cache._deferred
        assert path.exists()

    async def test_absent_file_is_trivial_success(self, orchestrator):
        assert await orchestrator.release_after_playback(URL) is True

    async def test_keep_files_never_deletes(self, orchestrator, audio_file, index):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        orchestrator.keep_files = True
        before = await index.get(VIDEO_ID, YT)

        assert await orchestrator.release_after_playback(URL) is False
        assert path.exists()
        assert await index.get(VIDEO_ID, YT) == before


@pytest.mark.asyncio
class TestLifecycle:
    async def test_startup_keeps_promoted_and_sweeps_the_rest(self, orchestrator, local_cache, index):
        await index.upsert("keepme", "Keep", URL, YT, remote_path="/cache/youtube/keepme.mp3")
        keep = local_cache.audio_path(YT, "keepme")
        keep.write_bytes(b"ID3 keep")
        local_cache.metadata_path(YT, "keepme").write_text("{}", encoding="utf-8")
        stray = local_cache.audio_path(YT, "stray")
        stray.write_bytes(b"ID3 stray")

        await orchestrator.startup()

        assert keep.exists()
        assert local_cache.metadata_path(YT, "keepme").exists()
        assert not stray.exists()

    async def test_startup_clears_stale_processing_flags(self, orchestrator, audio_file, index):
        path = await _store(orchestrator, audio_file)
        await orchestrator.wait_for_promotions()
        # upload interrupted by a crash
        await index.set_processing(VIDEO_ID, YT, True)

        await orchestrator.startup()

        assert (await index.get(VIDEO_ID, YT)).is_processing is False
        assert await orchestrator.release_after_playback(URL) is True
        assert not path.exists()

    async def test_background_cleanup_start_stop(self, orchestrator):
        await orchestrator.start_background_cleanup()
        task = orchestrator._cleanup_task
        assert task is not None and not task.done()

        await orchestrator.stop_background_cleanup()
        assert task.done()

    async def test_shutdown_cancel(self, orchestrator, audio_file, remote):
        remote.fail_writes = 100
        orchestrator._upload_backoff = 10
        await _store(orchestrator, audio_file)
        assert orchestrator.is_promoting(VIDEO_ID, YT)

        await orchestrator.shutdown(cancel=True)
        assert not orchestrator.is_promoting(VIDEO_ID, YT)


@pytest.mark.asyncio
class TestSweep:
    async def test_sweep_respects_permanence(self, orchestrator, audio_file, local_cache):
        stored = await _store(orchestrator, audio_file)
        unrelated = local_cache.audio_path(YT, "unrelated")
        unrelated.write_bytes(b"ID3 other")
        await orchestrator.wait_for_promotions()

        removed = await local_cache.sweep(0)

        assert removed == [unrelated]
        assert stored.exists()
        assert local_cache.metadata_path(YT, VIDEO_ID).exists()

    async def test_sweep_by_age(self, local_cache):
        fresh = local_cache.audio_path(YT, "fresh")
        fresh.write_bytes(b"x")
        old = local_cache.audio_path(ServiceType.SOUNDCLOUD, "sc_old")
        old.write_bytes(b"x")
        stale = time.time() - 3 * 86400
        os.utime(old, (stale, stale))
        loose = local_cache.root / "loose.mp3"
        loose.write_bytes(b"x")
        os.utime(loose, (stale, stale))

        removed = await local_cache.sweep(1)

        assert sorted(removed) == sorted([old, loose])
        assert fresh.exists()

    async def test_sweep_skips_directories(self, local_cache):
        await local_cache.sweep(0)
        assert all(local_cache.service_dir(s).is_dir() for s in ServiceType)
