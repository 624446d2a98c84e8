"""
Environment-based configuration using pydantic-settings.
All secrets come from environment variables — never hardcoded.
"""
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # ── Core ────────────────────────────────────────────────────────────────
    ENV: str = "production"
    LOG_LEVEL: str = "INFO"

    # ── Local cache ─────────────────────────────────────────────────────────
    CACHE_DIR: Path = Path("/tmp/music_cache")
    AUDIO_EXT: str = "mp3"
    CACHE_KEEP_FILES: bool = False          # never delete after playback
    CACHE_MAX_AGE_DAYS: float = 1
    CACHE_STARTUP_SWEEP_MAX_AGE_DAYS: float = 0
    CACHE_CLEANUP_INTERVAL_HOURS: float = 12
    CACHE_BUSY_RETRY_SECONDS: float = 2.0

    # ── Database ────────────────────────────────────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///music_cache.db"

    # ── WebDAV NAS (optional) ───────────────────────────────────────────────
    NAS_WEBDAV_URL: str = ""
    NAS_WEBDAV_USERNAME: str = ""
    NAS_WEBDAV_PASSWORD: str = ""
    NAS_CACHE_PATH: str = "/cache/"
    NAS_MAX_RETRIES: int = 5
    NAS_RETRY_DELAY_SECONDS: float = 5.0

    # ── Promotion (local → NAS upload) ──────────────────────────────────────
    UPLOAD_ATTEMPTS: int = 5
    UPLOAD_RECONNECT_AFTER: int = 3       # force a reconnect after this attempt
    UPLOAD_BACKOFF_SECONDS: float = 1.0

    # ── HTTP client ──────────────────────────────────────────────────────────
    HTTP_TIMEOUT_SECONDS: int = 300

    # ── yt-dlp ───────────────────────────────────────────────────────────────
    DOWNLOAD_STRATEGY: Literal["local", "ssh"] = "local"
    YTDLP_PATH: str = "yt-dlp"
    YTDLP_TIMEOUT_SECONDS: int = 30
    MAX_SONG_DURATION_SECONDS: int = 900

    # ── SSH (remote extraction) ──────────────────────────────────────────────
    SSH_HOST: str = ""
    SSH_PORT: int = 22
    SSH_USERNAME: str = ""
    SSH_PRIVATE_KEY_PATH: str = ""
    SSH_YTDLP_PATH: str = "yt-dlp"
    SSH_TEMP_DIR: str = "/tmp"

    @field_validator("CACHE_DIR", mode="before")
    @classmethod
    def ensure_cache_dir(cls, v: Path) -> Path:
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        return path

    @field_validator("NAS_CACHE_PATH")
    @classmethod
    def normalize_nas_path(cls, v: str) -> str:
        # WebDAV wants POSIX paths regardless of host OS
        stripped = v.replace("\\", "/").strip("/")
        return f"/{stripped}/" if stripped else "/"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
