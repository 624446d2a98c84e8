"""
SQLAlchemy model for the music cache index.
One row per (identifier, service); the unique constraint is what the
upsert in ``MetadataStore`` relies on.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class MusicCache(Base):
    __tablename__ = "music_cache"
    __table_args__ = (
        UniqueConstraint("identifier", "service", name="uq_music_cache_identifier_service"),
        Index("idx_music_cache_last_accessed", "last_accessed"),
        Index("idx_music_cache_access_count", "access_count"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    service: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    remote_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.current_timestamp())
    last_accessed: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.current_timestamp()
    )
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    is_processing: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default="0"
    )

    def __repr__(self) -> str:
        return f"<MusicCache {self.service}:{self.identifier} remote={self.remote_path!r}>"
