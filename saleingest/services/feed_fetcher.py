"""
Async site fetcher built on aiohttp.

Listing sites reject bare clients, so requests carry a browser user agent,
a feed-friendly Accept header and a Referer. 5xx responses are retried with a
short back-off; everything else is reported as a FetchOutcome, never raised.
"""

import asyncio
import time
from typing import Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from saleingest.models.ingest_run import FetchOutcome
from saleingest.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
ACCEPT = "application/rss+xml, text/xml;q=0.9, */*;q=0.8"
RETRY_BASE_DELAY = 0.5


def referer_for(url: str) -> str:
    """The URL without its query string or fragment."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def request_headers(url: str) -> dict[str, str]:
    return {
        "User-Agent": USER_AGENT,
        "Accept": ACCEPT,
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": referer_for(url),
    }


class FeedFetcher:
    """
    Fetch listing sites with retries on server errors.

    Usable as an async context manager; an injected session is never closed.
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        base_delay: float = RETRY_BASE_DELAY,
    ) -> None:
        self._external_session = session
        self._own_session: Optional[aiohttp.ClientSession] = None
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay

    async def __aenter__(self) -> "FeedFetcher":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._own_session = aiohttp.ClientSession(timeout=timeout)
        return self._own_session

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()
            self._own_session = None

    async def _request_once(self, url: str) -> tuple[int, str, str]:
        """Single GET returning (status, content type, body text)."""
        session = await self._ensure_session()
        async with session.get(url, headers=request_headers(url)) as resp:
            body = await resp.text(errors="replace")
            return resp.status, resp.headers.get("Content-Type", "unknown"), body

    async def fetch(self, url: str) -> FetchOutcome:
        """Fetch one site, retrying 5xx responses up to the attempt limit."""
        started = time.perf_counter()
        status, content_type, body = 0, "unknown", ""
        error: Optional[str] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                status, content_type, body = await self._request_once(url)
                error = None
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, LookupError) as e:
                error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                logger.warning("Site fetch failed", url=url, attempt=attempt, error=error)
                break

            if status < 500 or attempt == self._max_attempts:
                break

            delay = self._base_delay * attempt
            logger.warning(
                "Site returned server error, retrying",
                url=url,
                status=status,
                attempt=attempt,
                max_attempts=self._max_attempts,
                retry_in_seconds=delay,
            )
            await asyncio.sleep(delay)

        success = error is None and 200 <= status < 300
        if error is None and not success:
            error = f"HTTP {status}"

        outcome = FetchOutcome(
            url=url,
            status=status,
            content_type=content_type,
            bytes=len(body.encode("utf-8")) if body else 0,
            elapsed_ms=int((time.perf_counter() - started) * 1000),
            success=success,
            error=error,
            body=body if success else None,
        )
        logger.info(
            "Site fetched",
            url=url,
            status=status,
            success=success,
            response_bytes=outcome.bytes,
            elapsed_ms=outcome.elapsed_ms,
        )
        return outcome

    async def fetch_all(self, urls: Iterable[str]) -> list[FetchOutcome]:
        """Fetch sites concurrently; outcomes keep the input order."""
        return list(await asyncio.gather(*(self.fetch(url) for url in urls)))
