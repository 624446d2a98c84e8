"""
Metadata store — the ``music_cache`` table.
Authoritative for "is this cached, and is it on the NAS". Every method fails
soft: DB trouble is logged and reported as a miss so callers fall back to the
filesystem instead of failing the request.
"""
import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database.models import MusicCache
from app.services.models import CacheRecord
from app.utils.url_parser import ServiceType

logger = logging.getLogger(__name__)

_DB_ERRORS = (SQLAlchemyError, OSError)


class MetadataStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def get(self, identifier: str, service: ServiceType) -> Optional[CacheRecord]:
        try:
            async with self._sessionmaker() as session:
                row = await session.scalar(
                    select(MusicCache).where(
                        MusicCache.identifier == identifier,
                        MusicCache.service == service.value,
                    )
                )
        except _DB_ERRORS:
            logger.exception(
                "Cache index lookup failed",
                extra={"identifier": identifier, "service": service.value},
            )
            return None
        return _to_record(row) if row is not None else None

    async def upsert(
        self,
        identifier: str,
        title: Optional[str],
        source_url: str,
        service: ServiceType,
        remote_path: Optional[str] = None,
        file_size: Optional[int] = None,
        duration: Optional[int] = None,
    ) -> bool:
        """
        Insert a row or, on (identifier, service) conflict, bump access stats
        and fill in fields. A None argument never overwrites a stored value.
        """
        stmt = sqlite_insert(MusicCache).values(
            identifier=identifier,
            service=service.value,
            title=title,
            source_url=source_url,
            remote_path=remote_path,
            file_size=file_size,
            duration=duration,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[MusicCache.identifier, MusicCache.service],
            set_={
                "last_accessed": func.current_timestamp(),
                "access_count": MusicCache.access_count + 1,
                "title": func.coalesce(excluded.title, MusicCache.title),
                "remote_path": func.coalesce(excluded.remote_path, MusicCache.remote_path),
                "file_size": func.coalesce(excluded.file_size, MusicCache.file_size),
                "duration": func.coalesce(excluded.duration, MusicCache.duration),
            },
        )
        try:
            async with self._sessionmaker() as session:
                await session.execute(stmt)
                await session.commit()
        except _DB_ERRORS:
            logger.exception(
                "Cache index upsert failed",
                extra={"identifier": identifier, "service": service.value},
            )
            return False
        return True

    async def touch(self, identifier: str, service: ServiceType) -> None:
        await self._update(
            identifier,
            service,
            last_accessed=func.current_timestamp(),
            access_count=MusicCache.access_count + 1,
        )

    async def set_processing(self, identifier: str, service: ServiceType, flag: bool) -> None:
        await self._update(identifier, service, is_processing=flag)

    async def clear_processing(self) -> int:
        """Reset every in-flight flag; only safe while no upload can be running."""
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(
                    update(MusicCache)
                    .where(MusicCache.is_processing.is_(True))
                    .values(is_processing=False)
                )
                await session.commit()
        except _DB_ERRORS:
            logger.exception("Failed to clear stale processing flags")
            return 0
        return result.rowcount or 0

    async def list_promoted(self) -> list[tuple[str, ServiceType]]:
        """(identifier, service) of every row already mirrored on the NAS."""
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(
                    select(MusicCache.identifier, MusicCache.service).where(
                        MusicCache.remote_path.is_not(None)
                    )
                )
                rows = result.all()
        except _DB_ERRORS:
            logger.exception("Failed to load promoted cache entries")
            return []

        promoted = []
        for identifier, service in rows:
            try:
                promoted.append((identifier, ServiceType(service)))
            except ValueError:
                logger.warning(
                    "Skipping row with unknown service",
                    extra={"identifier": identifier, "service": service},
                )
        return promoted

    async def _update(self, identifier: str, service: ServiceType, **values) -> None:
        try:
            async with self._sessionmaker() as session:
                await session.execute(
                    update(MusicCache)
                    .where(
                        MusicCache.identifier == identifier,
                        MusicCache.service == service.value,
                    )
                    .values(**values)
                )
                await session.commit()
        except _DB_ERRORS:
            logger.exception(
                "Cache index update failed",
                extra={"identifier": identifier, "service": service.value, "fields": list(values)},
            )


def _to_record(row: MusicCache) -> CacheRecord:
    return CacheRecord(
        identifier=row.identifier,
        service=ServiceType(row.service),
        source_url=row.source_url,
        title=row.title,
        remote_path=row.remote_path,
        file_size=row.file_size,
        duration=row.duration,
        added_at=row.added_at,
        last_accessed=row.last_accessed,
        access_count=row.access_count,
        is_processing=bool(row.is_processing),
    )
