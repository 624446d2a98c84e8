"""
Download service — turns a track reference into a cached local file.
  query/URL → cache re-check → yt-dlp metadata → duration cap → extract → cache.store
Catalog links (Spotify, Apple Music, Deezer, Melon) have no audio of their own;
they are resolved through a YouTube search and cached under both identifiers.
"""
import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from app.config.settings import settings
from app.services.extractors import DownloadError, Extractor, TrackTooLongError
from app.services.models import CacheMetadata, DownloadOptions, DownloadResult, SearchResult
from app.services.orchestrator import CacheOrchestrator
from app.utils.url_parser import (
    CATALOG_SERVICES,
    ServiceType,
    detect_service,
    extract_identifier,
    is_url,
    youtube_url,
)

logger = logging.getLogger(__name__)


class DownloadService:
    def __init__(
        self,
        cache: CacheOrchestrator,
        extractor: Extractor,
        max_duration_seconds: Optional[int] = None,
    ):
        self.cache = cache
        self.extractor = extractor
        self.max_duration_seconds = (
            max_duration_seconds if max_duration_seconds is not None else settings.MAX_SONG_DURATION_SECONDS
        )
        self._inflight: dict[tuple[str, ServiceType], asyncio.Task] = {}

    async def materialize(self, url: str, options: Optional[DownloadOptions] = None) -> DownloadResult:
        """Never raises: every failure comes back as DownloadResult.failure()."""
        options = options or DownloadOptions()
        try:
            return await self._materialize(url.strip(), options)
        except DownloadError as e:
            logger.warning("Download failed", extra={"url": url[:80], "error": str(e)})
            return DownloadResult.failure(str(e))
        except Exception:
            logger.exception("Unexpected download failure", extra={"url": url[:80]})
            return DownloadResult.failure("Unexpected error while downloading")

    async def _materialize(self, url: str, options: DownloadOptions) -> DownloadResult:
        if not is_url(url):
            match = await self.find_best_match(url)
            if match is None:
                raise DownloadError(f'No results for "{url}"')
            url = match.url

        service = options.service or detect_service(url)
        identifier = options.identifier or extract_identifier(url, service)

        alias: Optional[SearchResult] = None
        if service in CATALOG_SERVICES:
            hit = await self.cache.resolve_local_path(url, identifier, service)
            if hit is not None:
                return await self._hit(hit, identifier, service)
            if not options.search_query:
                raise DownloadError("Catalog track needs a search query to find a playable source")
            alias = await self.find_best_match(options.search_query)
            if alias is None:
                raise DownloadError(f'No results for "{options.search_query}"')

        key = (identifier, service)
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._download(url, identifier, service, alias))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.info("Joining in-flight download", extra={"identifier": identifier, "service": service.value})
        return await asyncio.shield(task)

    def _forget(self, key: tuple[str, ServiceType], task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _download(
        self,
        url: str,
        identifier: str,
        service: ServiceType,
        alias: Optional[SearchResult],
    ) -> DownloadResult:
        hit = await self.cache.resolve_local_path(url, identifier, service)
        if hit is not None:
            return await self._hit(hit, identifier, service)

        source_url = url
        if alias is not None:
            source_url = youtube_url(alias.id)
            alias_hit = await self.cache.resolve_local_path(source_url, alias.id, ServiceType.YOUTUBE)
            if alias_hit is not None:
                return await self._adopt_alias(url, identifier, service, alias, alias_hit)

        info = await self.extractor.fetch_info(source_url)
        if self.max_duration_seconds and info.duration > self.max_duration_seconds:
            raise TrackTooLongError(
                f"Track is too long ({info.duration}s, limit {self.max_duration_seconds}s)"
            )

        work_dir = Path(tempfile.mkdtemp(prefix="music_dl_"))
        try:
            audio = await self.extractor.extract(source_url, work_dir, identifier)
            stored = await self.cache.store(
                url,
                audio,
                CacheMetadata(
                    title=info.title,
                    url=url,
                    duration=info.duration or None,
                    alternate_ids={ServiceType.YOUTUBE.value: alias.id} if alias else {},
                ),
                identifier,
                service,
            )
            if stored and alias is not None:
                # same bytes, second identity
                await self.cache.store(
                    source_url,
                    audio,
                    CacheMetadata(
                        title=info.title,
                        url=source_url,
                        duration=info.duration or None,
                        alternate_ids={service.value: identifier},
                    ),
                    alias.id,
                    ServiceType.YOUTUBE,
                )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        if not stored:
            raise DownloadError("Downloaded file could not be stored in the cache")

        logger.info(
            "Download complete",
            extra={"identifier": identifier, "service": service.value, "title": info.title},
        )
        return DownloadResult(
            success=True,
            file_path=str(self.cache.local.audio_path(service, identifier)),
            title=info.title,
            identifier=identifier,
            service=service,
        )

    async def _hit(self, path: Path, identifier: str, service: ServiceType) -> DownloadResult:
        meta = await self.cache.local.read_metadata(self.cache.local.metadata_path(service, identifier))
        return DownloadResult(
            success=True,
            file_path=str(path),
            title=(meta.title if meta and meta.title else identifier),
            identifier=identifier,
            service=service,
            cached=True,
        )

    async def _adopt_alias(
        self,
        url: str,
        identifier: str,
        service: ServiceType,
        alias: SearchResult,
        alias_path: Path,
    ) -> DownloadResult:
        """The YouTube source is already cached; copy it under the catalog identifier."""
        meta = await self.cache.local.read_metadata(
            self.cache.local.metadata_path(ServiceType.YOUTUBE, alias.id)
        )
        title = (meta.title if meta and meta.title else alias.title) or identifier
        stored = await self.cache.store(
            url,
            alias_path,
            CacheMetadata(
                title=title,
                url=url,
                duration=meta.duration if meta else None,
                alternate_ids={ServiceType.YOUTUBE.value: alias.id},
            ),
            identifier,
            service,
        )
        path = self.cache.local.audio_path(service, identifier) if stored else alias_path
        logger.info(
            "Catalog track served from cached source",
            extra={"identifier": identifier, "alias": alias.id},
        )
        return DownloadResult(
            success=True,
            file_path=str(path),
            title=title,
            identifier=identifier,
            service=service,
            cached=True,
        )

    # ── Search ──────────────────────────────────────────────────────────────

    async def search(self, query: str, limit: int = 5) -> list[SearchResult]:
        try:
            results = await self.extractor.search(query, limit)
        except DownloadError as e:
            logger.warning("YouTube search failed", extra={"query": query[:80], "error": str(e)})
            return []
        logger.info("YouTube search", extra={"query": query[:80], "results": len(results)})
        return results

    async def find_best_match(self, query: str) -> Optional[SearchResult]:
        results = await self.search(query, 1)
        return results[0] if results else None
