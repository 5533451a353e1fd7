"""Bounded retry with exponential backoff for transport calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY_SECONDS = 0.5


def is_transient_http_error(exc: BaseException) -> bool:
    """Network failures and 5xx responses are worth another try; nothing else is."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def compute_backoff(attempt: int, base_delay: float) -> float:
    # base, 2*base, 4*base, ...
    return max(0.0, base_delay) * (2 ** max(0, attempt - 1))


async def with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    is_retryable: Callable[[BaseException], bool] = is_transient_http_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "request",
) -> T:
    """Run *call*; on a retryable error wait and try again, at most *max_retries* times."""
    attempt = 0
    while True:
        try:
            return await call()
        except Exception as exc:
            if attempt >= max_retries or not is_retryable(exc):
                raise
            attempt += 1
            delay = compute_backoff(attempt, base_delay)
            logger.warning(
                "%s failed (%s), retry %s/%s in %.2fs",
                label,
                exc.__class__.__name__,
                attempt,
                max_retries,
                delay,
            )
            await sleep(delay)
