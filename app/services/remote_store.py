"""
NAS client — WebDAV over aiohttp.
- Lazy, idempotent connect that bootstraps the cache root and one directory per service.
- Bounded reconnect with linear backoff; once the budget is spent the client
  stays quiet until ``connect()`` is called again.
- Every operation short-circuits while the NAS is unavailable instead of raising.
"""
import asyncio
import logging
import posixpath
import xml.etree.ElementTree as ET
from typing import AsyncIterator, Callable, Optional
from urllib.parse import quote

import aiohttp
from aiohttp import ClientSession

from app.utils.http_client import HttpError, build_session, raise_for_status
from app.utils.url_parser import ServiceType

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)
_DAV_NS = "{DAV:}"
_PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getcontentlength/>"
    "</d:prop></d:propfind>"
)


class RemoteStoreError(Exception):
    pass


class WebDAVStore:
    def __init__(
        self,
        base_url: str,
        root: str = "/cache/",
        *,
        username: str = "",
        password: str = "",
        max_retries: int = 5,
        retry_delay: float = 5.0,
        session_factory: Optional[Callable[[], ClientSession]] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._root = "/" + root.replace("\\", "/").strip("/")
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._session_factory = session_factory or (
            lambda: build_session(username, password)
        )
        self._session: Optional[ClientSession] = None
        self._connect_lock = asyncio.Lock()
        self._retry_task: Optional[asyncio.Task] = None

        self.available = False
        self.retry_count = 0

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    @property
    def retry_task(self) -> Optional[asyncio.Task]:
        return self._retry_task

    def remote_path(self, service: ServiceType, filename: str) -> str:
        return posixpath.join(self._root, service.value, filename)

    # ── Connection management ───────────────────────────────────────────────

    async def connect(self) -> bool:
        """Establish the NAS session. Resets the retry budget."""
        if not self.enabled:
            return False
        async with self._connect_lock:
            if self.available:
                return True
            self.retry_count = 0
            logger.info("Connecting to NAS", extra={"url": self._base_url, "root": self._root})
            if await self._attempt():
                return True
            self._schedule_retries()
            return False

    async def reconnect(self) -> bool:
        """One bounded reconnect attempt; refuses once the budget is spent."""
        if not self.enabled:
            return False
        if self.retry_count >= self._max_retries:
            logger.warning(
                "NAS reconnect budget exhausted, giving up",
                extra={"max_retries": self._max_retries},
            )
            self.available = False
            return False
        self.retry_count += 1
        logger.info(
            "Reconnecting to NAS",
            extra={"attempt": self.retry_count, "max_retries": self._max_retries},
        )
        return await self._attempt()

    async def close(self) -> None:
        if self._retry_task and not self._retry_task.done():
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self.available = False

    async def _attempt(self) -> bool:
        try:
            if not await self._propfind_exists(self._root):
                await self._mkcol(self._root)
            for service in ServiceType:
                service_dir = posixpath.join(self._root, service.value)
                if not await self._propfind_exists(service_dir):
                    await self._mkcol(service_dir)
        except (*_TRANSPORT_ERRORS, HttpError) as exc:
            self.available = False
            logger.warning("NAS connection failed", extra={"error": str(exc)})
            return False

        self.available = True
        self.retry_count = 0
        logger.info("NAS connected", extra={"url": self._base_url})
        return True

    def _schedule_retries(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = asyncio.create_task(self._retry_loop())

    async def _retry_loop(self) -> None:
        while not self.available and self.retry_count < self._max_retries:
            await asyncio.sleep(self._retry_delay * max(self.retry_count, 1))
            if await self.reconnect():
                return
        if not self.available:
            logger.warning(
                "NAS unreachable, continuing with local cache only",
                extra={"attempts": self.retry_count},
            )

    def _mark_unavailable(self, op: str, path: str, exc: BaseException) -> None:
        logger.warning(
            "NAS operation failed, marking unavailable",
            extra={"op": op, "path": path, "error": str(exc)},
        )
        self.available = False
        self._schedule_retries()

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._session_factory()
        return self._session

    def _url(self, path: str) -> str:
        return self._base_url + quote("/" + path.lstrip("/"))

    # ── File operations ─────────────────────────────────────────────────────

    async def exists(self, path: str) -> bool:
        if not self.available:
            return False
        try:
            return await self._propfind_exists(path)
        except HttpError as exc:
            logger.warning("NAS exists check failed", extra={"path": path, "error": str(exc)})
            return False
        except _TRANSPORT_ERRORS as exc:
            self._mark_unavailable("exists", path, exc)
            return False

    async def stat(self, path: str) -> Optional[int]:
        """Size in bytes, or None when missing/unknown/unavailable."""
        if not self.available:
            return None
        try:
            async with self._get_session().request(
                "PROPFIND", self._url(path), data=_PROPFIND_BODY, headers={"Depth": "0"}
            ) as resp:
                if resp.status == 404:
                    return None
                await raise_for_status(resp)
                body = await resp.text()
        except HttpError as exc:
            logger.warning("NAS stat failed", extra={"path": path, "error": str(exc)})
            return None
        except _TRANSPORT_ERRORS as exc:
            self._mark_unavailable("stat", path, exc)
            return None
        return _parse_content_length(body)

    async def read_stream(self, path: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """Yield the file in chunks. Yields nothing while the NAS is unavailable."""
        if not self.available:
            return
        try:
            async with self._get_session().get(self._url(path)) as resp:
                await raise_for_status(resp)
                async for chunk in resp.content.iter_chunked(chunk_size):
                    yield chunk
        except HttpError as exc:
            raise RemoteStoreError(f"Failed to read {path}: {exc}") from exc
        except _TRANSPORT_ERRORS as exc:
            self._mark_unavailable("read", path, exc)
            raise RemoteStoreError(f"Failed to read {path}: {exc}") from exc

    async def write_bytes(self, path: str, data: bytes, overwrite: bool = True) -> bool:
        if not self.available:
            return False
        headers = {} if overwrite else {"Overwrite": "F"}
        try:
            async with self._get_session().put(self._url(path), data=data, headers=headers) as resp:
                await raise_for_status(resp)
        except HttpError as exc:
            logger.warning("NAS upload rejected", extra={"path": path, "error": str(exc)})
            return False
        except _TRANSPORT_ERRORS as exc:
            self._mark_unavailable("write", path, exc)
            return False
        return True

    async def make_directory(self, path: str) -> bool:
        if not self.available:
            return False
        try:
            await self._mkcol(path)
        except HttpError as exc:
            logger.warning("NAS mkdir rejected", extra={"path": path, "error": str(exc)})
            return False
        except _TRANSPORT_ERRORS as exc:
            self._mark_unavailable("mkdir", path, exc)
            return False
        return True

    async def _mkcol(self, path: str) -> None:
        async with self._get_session().request("MKCOL", self._url(path.rstrip("/") + "/")) as resp:
            # 405: collection already exists
            await raise_for_status(resp, 405)
        logger.info("Created NAS directory", extra={"path": path})

    async def _propfind_exists(self, path: str) -> bool:
        async with self._get_session().request(
            "PROPFIND", self._url(path), data=_PROPFIND_BODY, headers={"Depth": "0"}
        ) as resp:
            if resp.status == 404:
                return False
            await raise_for_status(resp)
            return True


def _parse_content_length(body: str) -> Optional[int]:
    try:
        tree = ET.fromstring(body)
    except ET.ParseError:
        return None
    node = tree.find(f".//{_DAV_NS}getcontentlength")
    if node is None or not (node.text or "").strip().isdigit():
        return None
    return int(node.text.strip())
