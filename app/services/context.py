"""
Explicit wiring of the cache subsystem. One ServiceContext per process;
everything it owns is started and torn down together.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from app.config.settings import Settings, settings as default_settings
from app.database import create_engine, create_sessionmaker, init_models
from app.services.cache import LocalCache
from app.services.downloader import DownloadService
from app.services.extractors import Extractor, build_extractor
from app.services.metadata_store import MetadataStore
from app.services.orchestrator import CacheOrchestrator
from app.services.remote_store import WebDAVStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    engine: AsyncEngine
    index: MetadataStore
    remote: WebDAVStore
    local: LocalCache
    cache: CacheOrchestrator
    downloads: DownloadService

    async def start(self, background_cleanup: bool = True) -> None:
        await init_models(self.engine)
        await self.cache.startup()
        await self.remote.connect()
        if background_cleanup:
            await self.cache.start_background_cleanup()
        logger.info(
            "Cache subsystem started",
            extra={"nas": self.remote.available, "root": str(self.local.root)},
        )

    async def close(self, cancel_uploads: bool = False) -> None:
        await self.cache.shutdown(cancel=cancel_uploads)
        await self.remote.close()
        await self.engine.dispose()
        logger.info("Cache subsystem stopped")


def build_context(
    cfg: Optional[Settings] = None,
    extractor: Optional[Extractor] = None,
) -> ServiceContext:
    cfg = cfg or default_settings

    engine = create_engine(cfg.DATABASE_URL)
    index = MetadataStore(create_sessionmaker(engine))
    remote = WebDAVStore(
        cfg.NAS_WEBDAV_URL,
        cfg.NAS_CACHE_PATH,
        username=cfg.NAS_WEBDAV_USERNAME,
        password=cfg.NAS_WEBDAV_PASSWORD,
        max_retries=cfg.NAS_MAX_RETRIES,
        retry_delay=cfg.NAS_RETRY_DELAY_SECONDS,
    )
    local = LocalCache(cfg.CACHE_DIR, cfg.AUDIO_EXT, cfg.CACHE_BUSY_RETRY_SECONDS)
    cache = CacheOrchestrator(
        local,
        index,
        remote,
        keep_files=cfg.CACHE_KEEP_FILES,
        upload_attempts=cfg.UPLOAD_ATTEMPTS,
        upload_reconnect_after=cfg.UPLOAD_RECONNECT_AFTER,
        upload_backoff_seconds=cfg.UPLOAD_BACKOFF_SECONDS,
        max_age_days=cfg.CACHE_MAX_AGE_DAYS,
        startup_sweep_max_age_days=cfg.CACHE_STARTUP_SWEEP_MAX_AGE_DAYS,
        cleanup_interval_hours=cfg.CACHE_CLEANUP_INTERVAL_HOURS,
    )
    downloads = DownloadService(
        cache,
        extractor or build_extractor(cfg),
        cfg.MAX_SONG_DURATION_SECONDS,
    )
    return ServiceContext(
        engine=engine,
        index=index,
        remote=remote,
        local=local,
        cache=cache,
        downloads=downloads,
    )
