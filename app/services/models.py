from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.utils.url_parser import ServiceType


@dataclass
class CacheRecord:
    """One ``music_cache`` row, detached from the ORM session."""

    identifier: str
    service: ServiceType
    source_url: str
    title: Optional[str] = None
    remote_path: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[int] = None
    added_at: Optional[datetime] = None
    last_accessed: Optional[datetime] = None
    access_count: int = 1
    is_processing: bool = False


@dataclass
class CacheMetadata:
    """Sidecar ``.meta.json`` payload; enough to rebuild a CacheRecord without the DB."""

    title: str
    url: str
    identifier: str = ""
    service: ServiceType = ServiceType.OTHER
    download_date: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    file_size: Optional[int] = None
    duration: Optional[int] = None
    remote_path: Optional[str] = None
    # service value → identifier of the same audio under another service
    alternate_ids: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["service"] = self.service.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheMetadata":
        return cls(
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            identifier=str(data.get("identifier") or ""),
            service=ServiceType(data.get("service") or ServiceType.OTHER.value),
            download_date=str(data.get("download_date") or ""),
            file_size=_opt_int(data.get("file_size")),
            duration=_opt_int(data.get("duration")),
            remote_path=data.get("remote_path") or None,
            alternate_ids=dict(data.get("alternate_ids") or {}),
        )


@dataclass
class TrackInfo:
    """The subset of ``yt-dlp -j`` output the cache cares about."""

    id: str
    title: str
    duration: int = 0
    url: str = ""

    @classmethod
    def from_ytdlp(cls, data: dict[str, Any], fallback_id: str) -> "TrackInfo":
        return cls(
            id=str(data.get("id") or fallback_id),
            title=str(data.get("title") or f"Unknown-{fallback_id}"),
            duration=int(float(data.get("duration") or 0)),
            url=str(data.get("webpage_url") or ""),
        )


@dataclass
class SearchResult:
    id: str
    title: str
    duration: str
    uploader: str
    url: str


@dataclass
class DownloadOptions:
    service: Optional[ServiceType] = None
    identifier: Optional[str] = None
    # "<artist> <title>" used to find a playable source for catalog tracks
    search_query: Optional[str] = None


@dataclass
class DownloadResult:
    success: bool
    file_path: Optional[str] = None
    title: Optional[str] = None
    identifier: Optional[str] = None
    service: Optional[ServiceType] = None
    error: Optional[str] = None
    cached: bool = False

    @classmethod
    def failure(cls, error: str) -> "DownloadResult":
        return cls(success=False, error=error)


def _opt_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
