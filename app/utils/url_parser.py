"""
Service detection and stable identifier extraction.
Every URL maps to exactly one (service, identifier) pair; the identifier is
the cache key used by the DB index, the local cache and the NAS mirror.
"""
import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs, urlparse


class ServiceType(str, Enum):
    YOUTUBE = "youtube"
    SOUNDCLOUD = "soundcloud"
    SPOTIFY = "spotify"
    APPLE_MUSIC = "apple-music"
    DEEZER = "deezer"
    MELON = "melon"
    OTHER = "other"


# Services whose URLs point at catalog metadata rather than downloadable audio.
CATALOG_SERVICES = frozenset({
    ServiceType.SPOTIFY,
    ServiceType.APPLE_MUSIC,
    ServiceType.DEEZER,
    ServiceType.MELON,
})

MELON_SCHEME = "melon:"

# ── Host patterns, checked in order ─────────────────────────────────────────
_SERVICE_HOSTS: tuple[tuple[ServiceType, tuple[str, ...]], ...] = (
    (ServiceType.YOUTUBE, ("youtube.com", "youtu.be")),
    (ServiceType.SOUNDCLOUD, ("soundcloud.com",)),
    (ServiceType.SPOTIFY, ("spotify.com", "spotify:")),
    (ServiceType.APPLE_MUSIC, ("music.apple.com", "apple.com/music")),
    (ServiceType.DEEZER, ("deezer.com",)),
    (ServiceType.MELON, ("melon.com",)),
)

# ── Regex patterns for ID extraction ────────────────────────────────────────
_YOUTUBE_ID_RE = re.compile(
    r"(?:youtube\.com/(?:[^/]+/.+/|(?:v|e(?:mbed)?|shorts|live)/|.*[?&]v=)|youtu\.be/)"
    r"([A-Za-z0-9_-]{11})",
    re.IGNORECASE,
)
_BARE_YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_SPOTIFY_RE = re.compile(
    r"spotify(?:\.com/(?:intl-[a-z]{2}/)?|:)(track|album|playlist|artist)[/:]([A-Za-z0-9]+)"
)
_APPLE_RE = re.compile(
    r"music\.apple\.com/(?:[a-z]{2}/)?(song|album|playlist)(?:/[^/?]+)?/(?:id|pl\.)?([0-9]+)"
)
_DEEZER_RE = re.compile(r"deezer\.com/(?:[a-z]{2}/)?(track|album|playlist)/([0-9]+)")
_MELON_PARAMS = (("songId", "track"), ("albumId", "album"), ("plylstSeq", "playlist"))


@dataclass(frozen=True)
class Classification:
    service: ServiceType
    raw_type: str = "unknown"


def url_hash(url: str) -> str:
    """Stable 10-hex-character fallback key."""
    return hashlib.md5(url.strip().encode("utf-8")).hexdigest()[:10]  # noqa: S324


def is_url(text: str) -> bool:
    """True for http(s) URLs and custom catalog URIs; False for search queries."""
    text = text.strip()
    return text.startswith(("http://", "https://", MELON_SCHEME, "spotify:"))


def detect_service(url: str) -> ServiceType:
    if url.startswith(MELON_SCHEME):
        return ServiceType.MELON
    lowered = url.lower()
    for service, needles in _SERVICE_HOSTS:
        if any(needle in lowered for needle in needles):
            return service
    return ServiceType.OTHER


def classify(url: str) -> Classification:
    """Return the service and the kind of resource a URL points at."""
    service = detect_service(url)

    if service == ServiceType.YOUTUBE:
        if "list=" in url and "v=" not in url:
            return Classification(service, "playlist")
        return Classification(service, "video")

    if service == ServiceType.SPOTIFY:
        match = _SPOTIFY_RE.search(url)
        return Classification(service, match.group(1) if match else "unknown")

    if service == ServiceType.APPLE_MUSIC:
        if _apple_song_param(url):
            return Classification(service, "track")
        match = _APPLE_RE.search(url)
        if not match:
            return Classification(service)
        kind = match.group(1)
        return Classification(service, "track" if kind == "song" else kind)

    if service == ServiceType.DEEZER:
        match = _DEEZER_RE.search(url)
        return Classification(service, match.group(1) if match else "unknown")

    if service == ServiceType.MELON:
        kind, _ = _melon_parts(url)
        return Classification(service, kind)

    if service == ServiceType.SOUNDCLOUD:
        return Classification(service, "playlist" if "/sets/" in url else "track")

    return Classification(service)


def extract_identifier(url: str, service: Optional[ServiceType] = None) -> str:
    """
    Derive the service-scoped cache identifier for a URL.
    Never fails: anything unrecognised falls back to a hash of the URL.
    """
    url = url.strip()
    service = service or detect_service(url)

    if service == ServiceType.YOUTUBE:
        video_id = extract_youtube_video_id(url)
        return video_id or url_hash(normalize_url(url))

    if service == ServiceType.SOUNDCLOUD:
        base = url.split("?", 1)[0].rstrip("/")
        parts = base.split("/")
        # https: / "" / soundcloud.com / artist / track
        if len(parts) >= 5 and parts[-1]:
            return f"sc_{parts[-1]}"
        return f"sc_{url_hash(url)}"

    if service == ServiceType.SPOTIFY:
        match = _SPOTIFY_RE.search(url)
        return f"sp_{match.group(2)}" if match else f"sp_{url_hash(url)}"

    if service == ServiceType.APPLE_MUSIC:
        song_id = _apple_song_param(url)
        if song_id:
            return f"am_{song_id}"
        match = _APPLE_RE.search(url)
        return f"am_{match.group(2)}" if match else f"am_{url_hash(url)}"

    if service == ServiceType.DEEZER:
        match = _DEEZER_RE.search(url)
        return f"dz_{match.group(2)}" if match else f"dz_{url_hash(url)}"

    if service == ServiceType.MELON:
        kind, ident = _melon_parts(url)
        if kind == "chart":
            return f"mel_chart_{ident or 'realtime'}"
        if ident:
            return f"mel_{ident}"
        return f"mel_{url_hash(url)}"

    return f"other_{url_hash(normalize_url(url))}"


def extract_youtube_video_id(url: str) -> Optional[str]:
    """Extract an 11-character video ID from watch, shortlink, embed or bare-ID input."""
    parsed = _safe_parse(url)
    if parsed:
        qs = parse_qs(parsed.query)
        if "v" in qs:
            vid = qs["v"][0]
            if _BARE_YOUTUBE_ID_RE.fullmatch(vid):
                return vid

    match = _YOUTUBE_ID_RE.search(url)
    if match:
        return match.group(1)

    if _BARE_YOUTUBE_ID_RE.fullmatch(url.strip()):
        return url.strip()
    return None


def normalize_url(url: str) -> str:
    """Strip tracking parameters where that is known to be safe."""
    url = url.strip()
    service = detect_service(url)
    if service == ServiceType.YOUTUBE:
        video_id = extract_youtube_video_id(url)
        return youtube_url(video_id) if video_id else url
    if service == ServiceType.SOUNDCLOUD:
        return url.split("?", 1)[0]
    return url


def youtube_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _apple_song_param(url: str) -> Optional[str]:
    parsed = _safe_parse(url)
    if parsed is None:
        return None
    values = parse_qs(parsed.query).get("i")
    if values and values[0].isdigit():
        return values[0]
    return None


def _melon_parts(url: str) -> tuple[str, str]:
    """Return (raw_type, id) for melon: URIs and melon.com URLs."""
    if url.startswith(MELON_SCHEME):
        parts = url[len(MELON_SCHEME):].split(":")
        kind = parts[0] or "unknown"
        ident = parts[1] if len(parts) > 1 else ""
        if kind == "chart":
            return kind, ident or "realtime"
        return kind, ident

    parsed = _safe_parse(url)
    if parsed is None:
        return "unknown", ""
    qs = parse_qs(parsed.query)
    for param, kind in _MELON_PARAMS:
        if qs.get(param):
            return kind, qs[param][0]
    if parsed.path.strip("/").startswith("chart"):
        return "chart", "realtime"
    return "unknown", ""


def _safe_parse(url: str):
    try:
        parsed = urlparse(url)
        if not parsed.netloc:
            return None
        return parsed
    except ValueError:
        return None
