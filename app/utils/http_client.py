"""
Shared aiohttp session factory and HTTP error type for the NAS client.
- Basic auth
- Timeouts
- No proxy/env leakage
"""
from typing import Optional

import aiohttp
from aiohttp import ClientSession, TCPConnector

from app.config.settings import settings


class HttpError(Exception):
    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"HTTP {status}: {message}")


def build_session(
    username: str = "",
    password: str = "",
    timeout_seconds: Optional[float] = None,
) -> ClientSession:
    connector = TCPConnector(limit=10)
    timeout = aiohttp.ClientTimeout(
        total=timeout_seconds if timeout_seconds is not None else settings.HTTP_TIMEOUT_SECONDS,
    )
    auth = aiohttp.BasicAuth(username, password) if username else None
    return ClientSession(
        connector=connector,
        timeout=timeout,
        auth=auth,
        trust_env=False,
    )


async def raise_for_status(resp: aiohttp.ClientResponse, *allowed: int) -> None:
    """Raise HttpError unless the status is 2xx or explicitly allowed."""
    if resp.status < 300 or resp.status in allowed:
        return
    body = await resp.text()
    raise HttpError(resp.status, body[:200])
