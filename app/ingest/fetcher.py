"""HTTP retrieval of XML feeds."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlparse

import httpx

from app.config import SyncSettings
from app.ingest.errors import (
    ConnectionRefused,
    FetchError,
    HostNotFound,
    HttpStatus,
    InvalidUrl,
    NetworkError,
    NotXml,
    Timeout,
)
from app.utils.dates import isoformat_utc, utc_now
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/xml, text/xml, */*"
BOM = b"\xef\xbb\xbf"
HOST_NOT_FOUND_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "name resolution",
    "no address associated",
)


def is_valid_url(url: str | None) -> bool:
    if not url:
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def classify_error(exc: Exception) -> FetchError:
    """Map an httpx exception onto the fetch error taxonomy."""
    if isinstance(exc, FetchError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return HttpStatus(response.status_code, response.reason_phrase)
    if isinstance(exc, httpx.TimeoutException):
        return Timeout("Request timeout")
    if isinstance(exc, httpx.ConnectError):
        message = str(exc).lower()
        if "refused" in message:
            return ConnectionRefused("Connection refused")
        if any(marker in message for marker in HOST_NOT_FOUND_MARKERS):
            return HostNotFound("Host not found")
        return NetworkError(f"Network error: {exc}")
    if isinstance(exc, httpx.TooManyRedirects):
        return NetworkError("Network error: too many redirects")
    return NetworkError(f"Network error: {exc.__class__.__name__}")


class FeedFetcher:
    def __init__(
        self,
        settings: SyncSettings,
        *,
        session: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._owns_session = session is None
        self._session = session or httpx.AsyncClient(
            timeout=settings.http_timeout,
            follow_redirects=True,
            max_redirects=settings.max_redirects,
        )
        self._headers = {
            "User-Agent": settings.user_agent,
            "Accept": ACCEPT_HEADER,
            "Accept-Encoding": "gzip, deflate",
        }
        self._sleep = sleep

    async def close(self) -> None:
        if self._owns_session:
            await self._session.aclose()

    async def fetch(self, url: str) -> bytes:
        """Return the feed body, retrying transient failures."""
        if not is_valid_url(url):
            raise InvalidUrl(f"Invalid feed URL: {url}")
        url = url.strip()

        def log_retry(attempt: int, exc: BaseException, delay: float) -> None:
            logger.warning(
                "Fetch attempt %s for %s failed (%s), retrying in %.1fs", attempt, url, exc, delay
            )

        fetch = retry_async(
            self._fetch_once,
            attempts=self.settings.retry_count,
            base_delay=self.settings.retry_delay,
            should_retry=lambda exc: isinstance(exc, FetchError) and exc.retryable,
            on_retry=log_retry,
            sleep=self._sleep,
        )
        return await fetch(url)

    async def fetch_with_metadata(self, url: str) -> dict[str, Any]:
        started = time.monotonic()
        metadata: dict[str, Any] = {"url": url, "fetched_at": isoformat_utc(utc_now())}
        try:
            content = await self.fetch(url)
        except FetchError as exc:
            metadata["duration_ms"] = int((time.monotonic() - started) * 1000)
            return {"success": False, "error": str(exc), "metadata": metadata}
        metadata["duration_ms"] = int((time.monotonic() - started) * 1000)
        metadata["content_length"] = len(content)
        return {"success": True, "content": content, "metadata": metadata}

    async def _fetch_once(self, url: str) -> bytes:
        started = time.monotonic()
        logger.debug("Fetching %s", url)
        try:
            response = await self._session.get(url, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            error = classify_error(exc)
            logger.error("Failed to fetch feed %s: %s", url, error)
            raise error from exc
        content = response.content
        logger.debug("Fetched %s in %dms", url, (time.monotonic() - started) * 1000)
        _ensure_xml(content)
        return content


def _ensure_xml(content: bytes) -> None:
    body = content.lstrip()
    if body.startswith(BOM):
        body = body[len(BOM):].lstrip()
    if not body:
        raise NotXml("Empty response received")
    if not body.startswith(b"<"):
        raise NotXml("Response does not appear to be XML")
