"""
yt-dlp extraction strategies.
- LocalExtractor: yt-dlp as a local subprocess.
- RemoteShellExtractor: yt-dlp on another host via ssh, result copied back with scp.
Both raise DownloadError subclasses; DownloadService turns them into results.
"""
import asyncio
import json
import logging
import posixpath
import shlex
import shutil
import uuid
from pathlib import Path
from typing import Optional, Protocol

from app.config.settings import Settings, settings
from app.services.models import SearchResult, TrackInfo
from app.utils.url_parser import url_hash, youtube_url

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    pass


class TrackTooLongError(DownloadError):
    pass


class GeoBlockedError(DownloadError):
    pass


class PrivateVideoError(DownloadError):
    pass


class ExtractorNotFoundError(DownloadError):
    pass


class DownloadTimeoutError(DownloadError):
    pass


class Extractor(Protocol):
    async def fetch_info(self, url: str) -> TrackInfo: ...

    async def extract(self, url: str, output_dir: Path, stem: str) -> Path: ...

    async def search(self, query: str, limit: int = 5) -> list[SearchResult]: ...


def locate_ytdlp(configured: str = "") -> str:
    """Configured path, then ./yt-dlp and ../yt-dlp (plus .exe), then PATH."""
    candidates: list[Path] = []
    if configured:
        candidates.append(Path(configured))
    for base in (Path.cwd(), Path.cwd().parent):
        candidates.extend(base / name for name in ("yt-dlp", "yt-dlp.exe"))

    for candidate in candidates:
        if candidate.is_file():
            return str(candidate)

    found = (configured and shutil.which(configured)) or shutil.which("yt-dlp")
    if found:
        return found
    raise ExtractorNotFoundError("yt-dlp is not installed or not in PATH")


def format_duration(seconds: float) -> str:
    total = int(seconds or 0)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


async def _run(cmd: list[str], timeout: float) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ExtractorNotFoundError(f"{cmd[0]} is not installed or not in PATH") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        raise DownloadTimeoutError(f"{Path(cmd[0]).name} timed out after {timeout}s") from exc

    return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")


def _raise_from_ytdlp_error(stderr: str) -> None:
    lower = stderr.lower()
    if "private video" in lower or "video is private" in lower:
        raise PrivateVideoError("This video is private and cannot be downloaded")
    if "not available in your country" in lower or "geo restrict" in lower or "geo-restrict" in lower:
        raise GeoBlockedError("This content is geo-blocked in the server's region")
    raise DownloadError(f"yt-dlp error: {stderr.strip()[:300]}")


def _parse_info(stdout: str, url: str) -> TrackInfo:
    line = stdout.strip().splitlines()[0] if stdout.strip() else ""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise DownloadError("yt-dlp returned malformed metadata") from exc
    if not isinstance(data, dict):
        raise DownloadError("yt-dlp returned malformed metadata")
    return TrackInfo.from_ytdlp(data, fallback_id=url_hash(url))


def _parse_search(stdout: str) -> list[SearchResult]:
    results = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping unparsable search result", extra={"line": line[:120]})
            continue
        video_id = str(data.get("id") or "")
        if not video_id:
            continue
        results.append(
            SearchResult(
                id=video_id,
                title=str(data.get("title") or ""),
                duration=format_duration(data.get("duration") or 0),
                uploader=str(data.get("uploader") or data.get("channel") or ""),
                url=str(data.get("webpage_url") or youtube_url(video_id)),
            )
        )
    return results


def _find_output(output_dir: Path, stem: str) -> Path:
    candidates = sorted(
        p for p in output_dir.glob(f"{stem}.*")
        if p.suffix != ".part" and p.is_file() and p.stat().st_size > 0
    )
    if not candidates:
        raise DownloadError("yt-dlp completed but no output file found")
    mp3 = [p for p in candidates if p.suffix == ".mp3"]
    return (mp3 or candidates)[0]


_EXTRACT_ARGS = ["-x", "--audio-format", "mp3", "--audio-quality", "0", "--no-playlist", "--no-progress", "--quiet"]


class LocalExtractor:
    def __init__(self, ytdlp_path: Optional[str] = None, timeout: Optional[float] = None):
        self._configured = ytdlp_path if ytdlp_path is not None else settings.YTDLP_PATH
        self._binary: Optional[str] = None
        self.timeout = timeout or settings.YTDLP_TIMEOUT_SECONDS

    @property
    def binary(self) -> str:
        if self._binary is None:
            self._binary = locate_ytdlp(self._configured)
            logger.debug("Using yt-dlp binary", extra={"path": self._binary})
        return self._binary

    async def fetch_info(self, url: str) -> TrackInfo:
        rc, stdout, stderr = await _run([self.binary, "-j", "--no-playlist", "--no-warnings", url], self.timeout)
        if rc != 0:
            _raise_from_ytdlp_error(stderr)
        return _parse_info(stdout, url)

    async def extract(self, url: str, output_dir: Path, stem: str) -> Path:
        output_template = str(output_dir / f"{stem}.%(ext)s")
        logger.info("Starting yt-dlp download", extra={"url": url[:80]})
        try:
            rc, _, stderr = await _run([self.binary, *_EXTRACT_ARGS, "-o", output_template, url], self.timeout)
        except DownloadTimeoutError:
            logger.warning("yt-dlp timed out, trying plain bestaudio", extra={"url": url[:80]})
            return await self._extract_simple(url, output_dir, stem)

        if rc != 0:
            _raise_from_ytdlp_error(stderr)
        return _find_output(output_dir, stem)

    async def _extract_simple(self, url: str, output_dir: Path, stem: str) -> Path:
        target = output_dir / f"{stem}.mp3"
        rc, _, stderr = await _run([self.binary, "-f", "bestaudio", "-o", str(target), url], self.timeout)
        if rc != 0:
            _raise_from_ytdlp_error(stderr)
        return _find_output(output_dir, stem)

    async def search(self, query: str, limit: int = 5) -> list[SearchResult]:
        rc, stdout, stderr = await _run(
            [self.binary, f"ytsearch{limit}:{query}", "--flat-playlist", "--dump-json", "--no-warnings"],
            self.timeout,
        )
        if rc != 0 and not stdout:
            _raise_from_ytdlp_error(stderr)
        return _parse_search(stdout)


class RemoteShellExtractor:
    """Runs yt-dlp on a build box over ssh; the audio comes back over scp."""

    def __init__(
        self,
        host: str,
        *,
        port: int = 22,
        username: str = "",
        key_path: str = "",
        ytdlp_path: str = "yt-dlp",
        temp_dir: str = "/tmp",
        timeout: Optional[float] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.key_path = key_path
        self.ytdlp_path = ytdlp_path
        self.temp_dir = temp_dir
        self.timeout = timeout or settings.YTDLP_TIMEOUT_SECONDS

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}" if self.username else self.host

    def _common_opts(self) -> list[str]:
        opts = ["-o", "BatchMode=yes", "-o", "StrictHostKeyChecking=accept-new"]
        if self.key_path:
            opts += ["-i", self.key_path]
        return opts

    async def _remote(self, *args: str) -> tuple[int, str, str]:
        command = " ".join(shlex.quote(a) for a in args)
        return await _run(["ssh", "-p", str(self.port), *self._common_opts(), self.target, command], self.timeout)

    async def fetch_info(self, url: str) -> TrackInfo:
        rc, stdout, stderr = await self._remote(self.ytdlp_path, "-j", "--no-playlist", "--no-warnings", url)
        if rc != 0:
            _raise_from_ytdlp_error(stderr)
        return _parse_info(stdout, url)

    async def extract(self, url: str, output_dir: Path, stem: str) -> Path:
        remote_file = posixpath.join(self.temp_dir, f"{stem}_{uuid.uuid4().hex[:8]}.mp3")
        local_file = output_dir / f"{stem}.mp3"
        logger.info("Starting remote yt-dlp download", extra={"url": url[:80], "host": self.host})
        try:
            rc, _, stderr = await self._remote(self.ytdlp_path, *_EXTRACT_ARGS, "-o", remote_file, url)
            if rc != 0:
                _raise_from_ytdlp_error(stderr)

            rc, _, stderr = await _run(
                ["scp", "-P", str(self.port), *self._common_opts(), f"{self.target}:{remote_file}", str(local_file)],
                self.timeout,
            )
            if rc != 0:
                raise DownloadError(f"scp failed: {stderr.strip()[:300]}")
        finally:
            try:
                await self._remote("rm", "-f", remote_file)
            except DownloadError as e:
                logger.warning("Remote temp file not removed", extra={"path": remote_file, "error": str(e)})

        return _find_output(output_dir, stem)

    async def search(self, query: str, limit: int = 5) -> list[SearchResult]:
        rc, stdout, stderr = await self._remote(
            self.ytdlp_path, f"ytsearch{limit}:{query}", "--flat-playlist", "--dump-json", "--no-warnings"
        )
        if rc != 0 and not stdout:
            _raise_from_ytdlp_error(stderr)
        return _parse_search(stdout)


def build_extractor(cfg: Settings) -> Extractor:
    if cfg.DOWNLOAD_STRATEGY == "ssh":
        if not cfg.SSH_HOST:
            raise ValueError("SSH_HOST is required when DOWNLOAD_STRATEGY=ssh")
        return RemoteShellExtractor(
            cfg.SSH_HOST,
            port=cfg.SSH_PORT,
            username=cfg.SSH_USERNAME,
            key_path=cfg.SSH_PRIVATE_KEY_PATH,
            ytdlp_path=cfg.SSH_YTDLP_PATH,
            temp_dir=cfg.SSH_TEMP_DIR,
            timeout=cfg.YTDLP_TIMEOUT_SECONDS,
        )
    return LocalExtractor(cfg.YTDLP_PATH, cfg.YTDLP_TIMEOUT_SECONDS)
