"""
HTTP Client Base - Shared aiohttp session handling for outbound calls.

Used by the agent invoker and the broker portfolio client:
- Pooled ClientSession created lazily
- SSL certificate validation through certifi
- Error messages scrubbed of credentials before they are logged or stored
"""

import re
import ssl
from typing import Any, Optional

import aiohttp
import certifi

USER_AGENT = "AnalysisFlow/1.0 (Analysis Coordinator)"

_SECRET_PATTERN = re.compile(r'(sk-[a-zA-Z0-9]{20,}|[a-zA-Z0-9]{32,}|Bearer\s+[^\s]+)')


def create_ssl_context() -> ssl.SSLContext:
    return ssl.create_default_context(cafile=certifi.where())


def sanitize_error_message(error: Any) -> str:
    """Error text with anything that looks like a key or bearer token redacted."""
    if isinstance(error, dict):
        inner = error.get('error', error)
        message = inner.get('message', str(inner)) if isinstance(inner, dict) else str(inner)
    else:
        message = str(error)
    return _SECRET_PATTERN.sub('[REDACTED]', message)


class HttpClientBase:
    """Owns one pooled aiohttp session; call close() on shutdown."""

    def __init__(self, timeout_seconds: float = 30.0, pool_size: int = 20):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._pool_size = pool_size
        self._session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._connector = aiohttp.TCPConnector(
                limit=self._pool_size,
                keepalive_timeout=30,
                ssl=create_ssl_context(),
            )
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                connector=self._connector,
                headers={'User-Agent': USER_AGENT},
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        if self._connector and not self._connector.closed:
            await self._connector.close()
        self._session = None
        self._connector = None
