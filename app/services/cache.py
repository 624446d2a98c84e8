"""
Local cache directory for audio files.
- One subdirectory per service: {CACHE_DIR}/{service}/{identifier}.{ext}
- Sidecar {identifier}.meta.json so entries survive a lost DB.
- Permanent set: names the age-based sweep must not touch.
"""
import asyncio
import errno
import json
import logging
import shutil
import time
from pathlib import Path
from typing import Optional

import aiofiles

from app.config.settings import settings
from app.services.models import CacheMetadata
from app.utils.url_parser import ServiceType

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"
_BUSY_ERRNOS = {errno.EBUSY, errno.EACCES, errno.EPERM}


def _base_name(name: str) -> str:
    # "id.mp3", "id.meta.json", "id.mp3.part" all share "id"
    return name.split(".", 1)[0]


def _is_busy(exc: OSError) -> bool:
    return isinstance(exc, PermissionError) or exc.errno in _BUSY_ERRNOS


class LocalCache:
    def __init__(
        self,
        root: Optional[Path] = None,
        audio_ext: Optional[str] = None,
        busy_retry_seconds: Optional[float] = None,
    ):
        self.root = Path(root or settings.CACHE_DIR)
        self.audio_ext = (audio_ext or settings.AUDIO_EXT).lstrip(".")
        self._busy_retry_seconds = (
            busy_retry_seconds if busy_retry_seconds is not None else settings.CACHE_BUSY_RETRY_SECONDS
        )
        self._permanent: set[str] = set()
        self._deferred: set[asyncio.Task] = set()

    # ── Layout ──────────────────────────────────────────────────────────────

    def ensure_directories(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        for service in ServiceType:
            self.service_dir(service).mkdir(exist_ok=True)

    def service_dir(self, service: ServiceType) -> Path:
        return self.root / service.value

    def filename(self, identifier: str) -> str:
        return f"{identifier}.{self.audio_ext}"

    def audio_path(self, service: ServiceType, identifier: str) -> Path:
        return self.service_dir(service) / self.filename(identifier)

    def metadata_path(self, service: ServiceType, identifier: str) -> Path:
        return self.service_dir(service) / f"{identifier}{META_SUFFIX}"

    # ── Permanent set ───────────────────────────────────────────────────────

    def mark_permanent(self, name: str) -> None:
        """Exempt a file from sweeps. Also covers its sidecar via the base name."""
        self._permanent.add(name)
        self._permanent.add(_base_name(name))

    def is_permanent(self, name: str) -> bool:
        return name in self._permanent or _base_name(name) in self._permanent

    # ── Sidecar metadata ────────────────────────────────────────────────────

    async def read_metadata(self, path: Path) -> Optional[CacheMetadata]:
        """Parse a sidecar; anything unreadable counts as no sidecar."""
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Sidecar unreadable", extra={"path": str(path), "error": str(e)})
            return None

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("sidecar is not a JSON object")
            return CacheMetadata.from_dict(data)
        except ValueError as e:
            logger.warning("Corrupt sidecar ignored", extra={"path": str(path), "error": str(e)})
            return None

    async def write_metadata(self, path: Path, metadata: CacheMetadata) -> bool:
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
                await f.write(json.dumps(metadata.to_dict(), ensure_ascii=False, indent=2))
            tmp.replace(path)
        except OSError as e:
            logger.warning("Sidecar write failed", extra={"path": str(path), "error": str(e)})
            return False
        return True

    # ── File operations ─────────────────────────────────────────────────────

    async def copy_into(self, src: Path, dest: Path) -> None:
        """
        Copy (never move) src to dest through a ``.part`` file, so dest is never
        left half-written. Raises OSError on failure.
        """
        if src.resolve() == dest.resolve():
            return
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        try:
            await asyncio.to_thread(shutil.copyfile, src, part)
            part.replace(dest)
        except OSError:
            part.unlink(missing_ok=True)
            raise

    async def delete(self, path: Path) -> bool:
        """
        Unlink an audio file and its sidecar.
        A busy file gets one deferred retry; the call itself then reports False.
        """
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            if not _is_busy(e):
                logger.error("Local cache delete failed", extra={"path": str(path), "error": str(e)})
                return False
            logger.warning(
                "File busy, deferring delete",
                extra={"path": str(path), "retry_in": self._busy_retry_seconds},
            )
            task = asyncio.create_task(self._deferred_delete(path))
            self._deferred.add(task)
            task.add_done_callback(self._deferred.discard)
            return False

        self._unlink_sidecar(path)
        logger.info("Local cache file deleted", extra={"path": str(path)})
        return True

    async def wait_for_deferred(self) -> None:
        if self._deferred:
            await asyncio.gather(*self._deferred, return_exceptions=True)

    async def _deferred_delete(self, path: Path) -> None:
        await asyncio.sleep(self._busy_retry_seconds)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Deferred delete gave up", extra={"path": str(path), "error": str(e)})
            return
        self._unlink_sidecar(path)
        logger.info("Deferred delete succeeded", extra={"path": str(path)})

    def _unlink_sidecar(self, audio: Path) -> None:
        sidecar = audio.with_name(audio.stem + META_SUFFIX)
        try:
            sidecar.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Sidecar delete failed", extra={"path": str(sidecar), "error": str(e)})

    # ── Sweep ───────────────────────────────────────────────────────────────

    async def sweep(self, max_age_days: float) -> list[Path]:
        """Delete non-permanent files older than max_age_days (0 = all of them)."""
        removed = await asyncio.to_thread(self._sweep_sync, max_age_days)
        logger.info(
            "Local cache sweep finished",
            extra={
                "removed": len(removed),
                "max_age_days": max_age_days,
                "permanent": len(self._permanent),
            },
        )
        return removed

    def _sweep_sync(self, max_age_days: float) -> list[Path]:
        now = time.time()
        max_age_seconds = max_age_days * 86400
        removed: list[Path] = []

        directories = [self.service_dir(s) for s in ServiceType] + [self.root]
        for directory in directories:
            if not directory.is_dir():
                continue
            try:
                entries = list(directory.iterdir())
            except OSError as e:
                logger.warning("Cache directory unreadable", extra={"path": str(directory), "error": str(e)})
                continue

            for entry in entries:
                if self.is_permanent(entry.name):
                    continue
                try:
                    if not entry.is_file():
                        continue
                    age = now - entry.stat().st_mtime
                    if max_age_days == 0 or age > max_age_seconds:
                        entry.unlink()
                        removed.append(entry)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning("Sweep could not remove file", extra={"path": str(entry), "error": str(e)})
        return removed
