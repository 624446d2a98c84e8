import asyncio
import posixpath
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio

from app.database import create_engine, create_sessionmaker, init_models
from app.services.cache import LocalCache
from app.services.metadata_store import MetadataStore
from app.services.models import SearchResult, TrackInfo
from app.services.orchestrator import CacheOrchestrator
from app.services.remote_store import RemoteStoreError
from app.utils.url_parser import ServiceType, youtube_url


class FakeRemoteStore:
    """In-memory stand-in for WebDAVStore."""

    def __init__(self, reachable: bool = True, root: str = "/cache"):
        self.enabled = True
        self.reachable = reachable
        self.available = reachable
        self.root = root
        self.files: dict[str, bytes] = {}
        self.fail_writes = 0
        self.write_attempts = 0
        self.write_log: list[str] = []
        self.connect_calls = 0
        self.reconnect_calls = 0

    def remote_path(self, service: ServiceType, filename: str) -> str:
        return posixpath.join(self.root, service.value, filename)

    async def connect(self) -> bool:
        self.connect_calls += 1
        self.available = self.reachable
        return self.available

    async def reconnect(self) -> bool:
        self.reconnect_calls += 1
        self.available = self.reachable
        return self.available

    async def exists(self, path: str) -> bool:
        return self.available and path in self.files

    async def stat(self, path: str) -> Optional[int]:
        if not self.available or path not in self.files:
            return None
        return len(self.files[path])

    async def read_stream(self, path: str, chunk_size: int = 4):
        if not self.available:
            return
        if path not in self.files:
            raise RemoteStoreError(f"missing {path}")
        data = self.files[path]
        for start in range(0, len(data), chunk_size):
            yield data[start:start + chunk_size]

    async def write_bytes(self, path: str, data: bytes, overwrite: bool = True) -> bool:
        if not self.available:
            return False
        self.write_attempts += 1
        self.write_log.append(path)
        if self.fail_writes > 0:
            self.fail_writes -= 1
            return False
        self.files[path] = bytes(data)
        return True

    async def close(self) -> None:
        self.available = False


class FakeExtractor:
    """Records calls; 'downloads' by writing a small file named after the URL."""

    def __init__(
        self,
        info: Optional[TrackInfo] = None,
        search_results: Optional[list[SearchResult]] = None,
        error: Optional[Exception] = None,
        delay: float = 0,
    ):
        self.info = info or TrackInfo(id="dQw4w9WgXcQ", title="Never Gonna Give You Up", duration=213)
        self.search_results = search_results if search_results is not None else [
            SearchResult(
                id="dQw4w9WgXcQ",
                title="Never Gonna Give You Up",
                duration="3:33",
                uploader="Rick Astley",
                url=youtube_url("dQw4w9WgXcQ"),
            )
        ]
        self.error = error
        self.delay = delay
        self.info_calls: list[str] = []
        self.extract_calls: list[str] = []
        self.search_calls: list[str] = []

    async def fetch_info(self, url: str) -> TrackInfo:
        self.info_calls.append(url)
        if self.error is not None:
            raise self.error
        return self.info

    async def extract(self, url: str, output_dir: Path, stem: str) -> Path:
        self.extract_calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        out = output_dir / f"{stem}.mp3"
        out.write_bytes(b"ID3" + url.encode())
        return out

    async def search(self, query: str, limit: int = 5) -> list[SearchResult]:
        self.search_calls.append(query)
        return self.search_results[:limit]


@pytest_asyncio.fixture
async def index(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await init_models(engine)
    yield MetadataStore(create_sessionmaker(engine))
    await engine.dispose()


@pytest.fixture
def local_cache(tmp_path) -> LocalCache:
    cache = LocalCache(tmp_path / "cache", "mp3", busy_retry_seconds=0.01)
    cache.ensure_directories()
    return cache


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest_asyncio.fixture
async def orchestrator(local_cache, index, remote):
    orch = CacheOrchestrator(
        local_cache,
        index,
        remote,
        keep_files=False,
        upload_attempts=3,
        upload_reconnect_after=2,
        upload_backoff_seconds=0,
        max_age_days=1,
        startup_sweep_max_age_days=0,
        cleanup_interval_hours=12,
    )
    yield orch
    await orch.shutdown(cancel=True)


@pytest.fixture
def audio_file(tmp_path) -> Path:
    path = tmp_path / "incoming" / "track.mp3"
    path.parent.mkdir()
    path.write_bytes(b"ID3" + bytes(range(256)) * 4)
    return path
