"""
Cache orchestrator — answers "do we have this track, and where are the bytes?"
  lookup:    DB → NAS (stream to local) → local file → miss
  store:     permanent mark → local copy → sidecar → DB row → background upload
  release:   delete the local copy only once the NAS copy is confirmed
"""
import asyncio
import contextlib
import dataclasses
import json
import logging
from pathlib import Path
from typing import Optional

import aiofiles

from app.config.settings import settings
from app.services.cache import META_SUFFIX, LocalCache
from app.services.metadata_store import MetadataStore
from app.services.models import CacheMetadata, CacheRecord
from app.services.remote_store import RemoteStoreError, WebDAVStore
from app.utils.url_parser import ServiceType, detect_service, extract_identifier

logger = logging.getLogger(__name__)

PromotionKey = tuple[str, ServiceType]


def resolve_key(
    url: str,
    identifier: Optional[str] = None,
    service: Optional[ServiceType] = None,
) -> PromotionKey:
    """Fill in whatever part of (identifier, service) the caller didn't have."""
    service = service or detect_service(url)
    return identifier or extract_identifier(url, service), service


class CacheOrchestrator:
    def __init__(
        self,
        local: LocalCache,
        index: MetadataStore,
        remote: WebDAVStore,
        *,
        keep_files: Optional[bool] = None,
        upload_attempts: Optional[int] = None,
        upload_reconnect_after: Optional[int] = None,
        upload_backoff_seconds: Optional[float] = None,
        max_age_days: Optional[float] = None,
        startup_sweep_max_age_days: Optional[float] = None,
        cleanup_interval_hours: Optional[float] = None,
    ):
        self.local = local
        self.index = index
        self.remote = remote

        def pick(value, default):
            return default if value is None else value

        self.keep_files = pick(keep_files, settings.CACHE_KEEP_FILES)
        self._upload_attempts = pick(upload_attempts, settings.UPLOAD_ATTEMPTS)
        self._reconnect_after = pick(upload_reconnect_after, settings.UPLOAD_RECONNECT_AFTER)
        self._upload_backoff = pick(upload_backoff_seconds, settings.UPLOAD_BACKOFF_SECONDS)
        self._max_age_days = pick(max_age_days, settings.CACHE_MAX_AGE_DAYS)
        self._startup_sweep_days = pick(startup_sweep_max_age_days, settings.CACHE_STARTUP_SWEEP_MAX_AGE_DAYS)
        self._cleanup_interval = pick(cleanup_interval_hours, settings.CACHE_CLEANUP_INTERVAL_HOURS)

        self._promotions: dict[PromotionKey, asyncio.Task] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    # ── Lookup ──────────────────────────────────────────────────────────────

    async def resolve_local_path(
        self,
        url: str,
        identifier: Optional[str] = None,
        service: Optional[ServiceType] = None,
    ) -> Optional[Path]:
        """Local path of a readable cached copy, or None when no tier has it."""
        identifier, service = resolve_key(url, identifier, service)
        return await self._resolve(url, identifier, service)

    async def _resolve(self, url: str, identifier: str, service: ServiceType) -> Optional[Path]:
        local_path = self.local.audio_path(service, identifier)
        record = await self.index.get(identifier, service)

        # 1. DB says the NAS has it
        if record and record.remote_path and self.remote.available:
            if _has_bytes(local_path) or await self._materialize_remote(record, local_path):
                await self.index.touch(identifier, service)
                logger.info(
                    "Cache hit (NAS-backed)",
                    extra={"identifier": identifier, "service": service.value},
                )
                return local_path

        # 2. Whatever is on disk
        if _has_bytes(local_path):
            if record is None:
                await self._backfill(url, identifier, service, local_path)
            else:
                await self.index.touch(identifier, service)
            logger.info(
                "Cache hit (local)",
                extra={"identifier": identifier, "service": service.value},
            )
            return local_path

        return None

    async def _materialize_remote(self, record: CacheRecord, local_path: Path) -> bool:
        remote_path = record.remote_path
        if not await self.remote.exists(remote_path):
            logger.warning(
                "DB points at a missing NAS file",
                extra={"identifier": record.identifier, "remote_path": remote_path},
            )
            return False

        expected = await self.remote.stat(remote_path)
        part = local_path.with_name(local_path.name + ".part")
        written = 0
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            async with contextlib.aclosing(self.remote.read_stream(remote_path)) as stream:
                async with aiofiles.open(part, "wb") as f:
                    async for chunk in stream:
                        await f.write(chunk)
                        written += len(chunk)
            if written == 0 or (expected is not None and written != expected):
                raise RemoteStoreError(f"short read: got {written} of {expected} bytes")
            part.replace(local_path)
        except (RemoteStoreError, OSError) as e:
            logger.warning(
                "NAS materialisation failed, falling back to local",
                extra={"identifier": record.identifier, "remote_path": remote_path, "error": str(e)},
            )
            part.unlink(missing_ok=True)
            return False

        self.local.mark_permanent(local_path.name)
        sidecar = self.local.metadata_path(record.service, record.identifier)
        if not sidecar.exists():
            await self.local.write_metadata(sidecar, _metadata_from_record(record))

        logger.info(
            "Materialised from NAS",
            extra={"identifier": record.identifier, "remote_path": remote_path, "bytes": written},
        )
        return True

    async def _backfill(self, url: str, identifier: str, service: ServiceType, local_path: Path) -> None:
        """Recreate a missing DB row from the sidecar, or from the file itself."""
        meta = await self.local.read_metadata(self.local.metadata_path(service, identifier))
        if meta is not None:
            await self.index.upsert(
                identifier,
                meta.title or None,
                meta.url or url,
                service,
                remote_path=meta.remote_path,
                file_size=meta.file_size or local_path.stat().st_size,
                duration=meta.duration,
            )
        else:
            await self.index.upsert(identifier, None, url, service, file_size=local_path.stat().st_size)
        logger.info(
            "Backfilled cache index from disk",
            extra={"identifier": identifier, "service": service.value, "sidecar": meta is not None},
        )

    # ── Write ───────────────────────────────────────────────────────────────

    async def store(
        self,
        url: str,
        temp_path: Path,
        metadata: CacheMetadata,
        identifier: Optional[str] = None,
        service: Optional[ServiceType] = None,
    ) -> bool:
        """
        Register a file in the cache. Returns once the local copy is in place;
        the NAS upload continues in the background.
        """
        identifier, service = resolve_key(url, identifier, service)
        filename = self.local.filename(identifier)
        # before any I/O so a concurrent sweep can't collect it mid-registration
        self.local.mark_permanent(filename)

        dest = self.local.audio_path(service, identifier)
        try:
            await self.local.copy_into(Path(temp_path), dest)
            file_size = dest.stat().st_size
        except OSError as e:
            logger.error(
                "Failed to copy into local cache",
                extra={"identifier": identifier, "src": str(temp_path), "error": str(e)},
            )
            return False

        meta = dataclasses.replace(
            metadata,
            identifier=identifier,
            service=service,
            url=metadata.url or url,
            file_size=file_size,
        )
        await self.local.write_metadata(self.local.metadata_path(service, identifier), meta)
        await self.index.upsert(
            identifier,
            meta.title or None,
            url,
            service,
            file_size=file_size,
            duration=meta.duration,
        )
        logger.info(
            "Stored in cache",
            extra={"identifier": identifier, "service": service.value, "size_kb": file_size // 1024},
        )

        self.promote(url, identifier, service)
        return True

    # ── Promotion (local → NAS) ─────────────────────────────────────────────

    def promote(self, url: str, identifier: str, service: ServiceType) -> Optional[asyncio.Task]:
        """Start a background upload unless one is already pending for this key."""
        if not self.remote.enabled:
            return None
        key = (identifier, service)
        pending = self._promotions.get(key)
        if pending is not None and not pending.done():
            return pending

        task = asyncio.create_task(
            self._promote(url, identifier, service),
            name=f"promote:{service.value}:{identifier}",
        )
        self._promotions[key] = task
        task.add_done_callback(lambda t, k=key: self._forget_promotion(k, t))
        return task

    def is_promoting(self, identifier: str, service: ServiceType) -> bool:
        task = self._promotions.get((identifier, service))
        return task is not None and not task.done()

    def _forget_promotion(self, key: PromotionKey, task: asyncio.Task) -> None:
        if self._promotions.get(key) is task:
            del self._promotions[key]

    async def _promote(self, url: str, identifier: str, service: ServiceType) -> bool:
        local_path = self.local.audio_path(service, identifier)
        log_extra = {"identifier": identifier, "service": service.value}
        try:
            if not local_path.is_file():
                logger.warning("Promotion skipped, local file is gone", extra=log_extra)
                return False

            await self.index.set_processing(identifier, service, True)
            try:
                if not self.remote.available:
                    await self.remote.connect()

                async with aiofiles.open(local_path, "rb") as f:
                    data = await f.read()
                remote_path = self.remote.remote_path(service, local_path.name)

                if not await self._upload(remote_path, data, log_extra):
                    logger.error("Promotion gave up, file stays local-only", extra=log_extra)
                    return False

                await self._upload_sidecar(service, identifier, remote_path, len(data))
                await self.index.upsert(
                    identifier, None, url, service,
                    remote_path=remote_path,
                    file_size=len(data),
                )
                self.local.mark_permanent(local_path.name)
                logger.info("Promoted to NAS", extra={**log_extra, "remote_path": remote_path})
                return True
            finally:
                await self.index.set_processing(identifier, service, False)
        except asyncio.CancelledError:
            logger.info("Promotion cancelled", extra=log_extra)
            raise
        except Exception:
            logger.exception("Promotion crashed", extra=log_extra)
            return False

    async def _upload(self, remote_path: str, data: bytes, log_extra: dict) -> bool:
        for attempt in range(1, self._upload_attempts + 1):
            if self.remote.available and await self.remote.write_bytes(remote_path, data):
                return True

            logger.warning(
                "NAS upload attempt failed",
                extra={**log_extra, "attempt": attempt, "max_attempts": self._upload_attempts},
            )
            if attempt == self._upload_attempts:
                break
            if attempt == self._reconnect_after:
                await self.remote.reconnect()
            await asyncio.sleep(self._upload_backoff * attempt)
        return False

    async def _upload_sidecar(
        self,
        service: ServiceType,
        identifier: str,
        remote_path: str,
        file_size: int,
    ) -> None:
        """Best-effort copy of the sidecar next to the NAS audio file."""
        sidecar = self.local.metadata_path(service, identifier)
        meta = await self.local.read_metadata(sidecar)
        if meta is None:
            return
        meta = dataclasses.replace(meta, remote_path=remote_path, file_size=file_size)
        await self.local.write_metadata(sidecar, meta)

        payload = json.dumps(meta.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")
        remote_meta = self.remote.remote_path(service, f"{identifier}{META_SUFFIX}")
        if not await self.remote.write_bytes(remote_meta, payload):
            logger.warning("Sidecar upload failed", extra={"identifier": identifier, "path": remote_meta})

    async def wait_for_promotions(self) -> None:
        while self._promotions:
            await asyncio.gather(*list(self._promotions.values()), return_exceptions=True)

    # ── Demotion (post-playback) ────────────────────────────────────────────

    async def release_after_playback(
        self,
        url: str,
        identifier: Optional[str] = None,
        service: Optional[ServiceType] = None,
    ) -> bool:
        """
        Drop the local copy after playback if the NAS has it.
        Returns True only when the local file is gone.
        """
        if self.keep_files:
            logger.debug("Keep-files mode, retaining local copy", extra={"url": url[:80]})
            return False

        identifier, service = resolve_key(url, identifier, service)
        local_path = self.local.audio_path(service, identifier)
        log_extra = {"identifier": identifier, "service": service.value}

        if not local_path.exists():
            return True

        record = await self.index.get(identifier, service)
        if record is not None and record.is_processing:
            logger.info("Upload in flight, retaining local copy", extra=log_extra)
            return False

        if record is None or not record.remote_path:
            logger.info("Not on NAS yet, retaining local copy and queueing upload", extra=log_extra)
            self.promote(url, identifier, service)
            return False

        if not await self.remote.exists(record.remote_path):
            logger.info(
                "NAS copy not confirmed, retaining local copy",
                extra={**log_extra, "remote_path": record.remote_path},
            )
            return False

        return await self.local.delete(local_path)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def startup(self) -> None:
        """Load the permanent set from the DB, then run the startup sweep."""
        self.local.ensure_directories()
        # nothing can be uploading yet; flags left by a crashed process are stale
        stale = await self.index.clear_processing()
        if stale:
            logger.warning("Cleared stale processing flags", extra={"count": stale})
        promoted = await self.index.list_promoted()
        for identifier, _service in promoted:
            self.local.mark_permanent(self.local.filename(identifier))
        logger.info("Permanent cache entries loaded", extra={"count": len(promoted)})
        await self.local.sweep(self._startup_sweep_days)

    async def start_background_cleanup(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.debug("Started cache cleanup task")

    async def stop_background_cleanup(self) -> None:
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            logger.debug("Stopped cache cleanup task")

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval * 3600)
                await self.local.sweep(self._max_age_days)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in cache cleanup loop")

    async def shutdown(self, cancel: bool = False) -> None:
        """Stop background work. Pending uploads are awaited, or cancelled when asked."""
        await self.stop_background_cleanup()
        if cancel:
            for task in self._promotions.values():
                task.cancel()
            if self._promotions:
                await asyncio.gather(*list(self._promotions.values()), return_exceptions=True)
            logger.info("Pending promotions cancelled")
        else:
            await self.wait_for_promotions()
            await self.local.wait_for_deferred()


def _has_bytes(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def _metadata_from_record(record: CacheRecord) -> CacheMetadata:
    return CacheMetadata(
        title=record.title or "",
        url=record.source_url,
        identifier=record.identifier,
        service=record.service,
        file_size=record.file_size,
        duration=record.duration,
        remote_path=record.remote_path,
    )
