"""Conditional HTTP fetching of feed documents."""

import asyncio
import logging
from dataclasses import dataclass

import httpx

from feedsync.config import SyncConfig
from feedsync.retry import with_retry

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml, text/xml"

HTTP_NOT_MODIFIED = 304


class FetchError(Exception):
    """Base class for fetch failures."""


class TransportError(FetchError):
    """Raised on timeouts, refused connections and DNS failures.

    These are worth retrying, unlike HTTP error statuses.
    """


@dataclass
class FetchResult:
    """Outcome of a single conditional fetch."""

    ok: bool
    status_code: int | None = None
    body: bytes = b""
    etag: str | None = None
    last_modified: str | None = None
    error: str | None = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == HTTP_NOT_MODIFIED

    @property
    def size_bytes(self) -> int:
        return len(self.body)


def build_client(config: SyncConfig) -> httpx.AsyncClient:
    """Create the shared HTTP client used for a sync run."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.timeout_seconds),
        headers={"User-Agent": config.user_agent, "Accept": ACCEPT_HEADER},
        follow_redirects=True,
    )


def conditional_headers(
    etag: str | None = None, last_modified: str | None = None
) -> dict[str, str]:
    """Build If-None-Match / If-Modified-Since headers from stored validators."""
    headers = {}
    if etag:
        headers["If-None-Match"] = etag
    if last_modified:
        headers["If-Modified-Since"] = last_modified
    return headers


async def request_feed(
    client: httpx.AsyncClient,
    url: str,
    etag: str | None = None,
    last_modified: str | None = None,
    timeout: float | None = None,
) -> FetchResult:
    """Fetch a feed once, sending any stored cache validators.

    `timeout` bounds the whole request, body included.

    Returns:
        FetchResult: 304 and 2xx are successes; any other status is a failure
        carrying the status code.

    Raises:
        TransportError: If the request timed out or never got a response.
    """
    try:
        async with asyncio.timeout(timeout):
            response = await client.get(url, headers=conditional_headers(etag, last_modified))
    except (httpx.TimeoutException, TimeoutError) as e:
        raise TransportError(f"Timed out fetching {url}") from e
    except httpx.TransportError as e:
        raise TransportError(f"Could not reach {url}: {e}") from e

    if response.status_code == HTTP_NOT_MODIFIED:
        logger.debug("Not modified: %s", url)
        return FetchResult(ok=True, status_code=HTTP_NOT_MODIFIED)

    if not response.is_success:
        return FetchResult(
            ok=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}: {response.reason_phrase}",
        )

    return FetchResult(
        ok=True,
        status_code=response.status_code,
        body=response.content,
        etag=response.headers.get("etag"),
        last_modified=response.headers.get("last-modified"),
    )


async def fetch_feed(
    client: httpx.AsyncClient,
    url: str,
    etag: str | None = None,
    last_modified: str | None = None,
    timeout: float | None = None,
    attempts: int = 1,
    retry_base_delay: float = 1.0,
) -> FetchResult:
    """Like request_feed, but reports transport errors as a failed result.

    With attempts > 1, transport errors are retried with exponential
    backoff before giving up. HTTP error statuses are never retried.
    """

    async def attempt() -> FetchResult:
        return await request_feed(client, url, etag, last_modified, timeout)

    try:
        if attempts > 1:
            return await with_retry(
                attempt,
                max_attempts=attempts,
                base_delay=retry_base_delay,
                retry_on=(TransportError,),
            )
        return await attempt()
    except TransportError as e:
        return FetchResult(ok=False, error=str(e))
