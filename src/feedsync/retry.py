"""Bounded exponential-backoff retry for async operations."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Await `operation` until it succeeds or attempts run out.

    The first attempt runs immediately; attempt n+1 waits
    base_delay * 2**(n-1) seconds. Exceptions not listed in `retry_on`
    propagate at once, and the last error propagates unchanged once every
    attempt has failed.

    Apply this only where failures look transient: retrying a 404 just
    delays the same answer.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.INFO),
        sleep=asyncio.sleep,
        reraise=True,
    ):
        with attempt:
            return await operation()

    raise AssertionError("unreachable")
