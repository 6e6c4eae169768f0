"""
Timeout and retry helpers for backend calls.

Why:
    Every backend call is a suspension point that may hang on a flaky network.
    Bounding each attempt and retrying a small, fixed number of times keeps the
    session layer from spinning forever while tolerating a single blip.

Design:
    - `with_timeout` uses `asyncio.wait_for`, so an expired attempt cancels the
      underlying request task instead of leaving it running in the background.
    - Errors may declare `retryable = True/False`; otherwise the SDK error type,
      a status code or the message decides (timeouts, transport failures, 5xx
      and 429 retry).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from supabase import AuthRetryableError

T = TypeVar("T")

logger = logging.getLogger("carecall.identity_access.resilience")

RETRYABLE_PATTERNS = (
    "timeout",
    "network",
    "fetch",
    "aborted",
    "connection",
    "unavailable",
    "too many requests",
    "rate limit",
)


class OperationTimeout(asyncio.TimeoutError):
    """Raised when an awaited backend operation exceeds its time budget."""

    retryable = True

    def __init__(self, label: str, seconds: float):
        super().__init__(f"{label} timeout ({seconds:g}s)")
        self.label = label
        self.seconds = seconds


async def with_timeout(awaitable: Awaitable[T], seconds: Optional[float], label: str = "operation") -> T:
    """Await `awaitable` for at most `seconds`; cancel it when time runs out."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        if isinstance(exc, OperationTimeout):
            raise
        raise OperationTimeout(label, seconds) from exc


def backoff_delay(attempt: int, base_delay: float = 1.0) -> float:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return base_delay * (2 ** attempt)


def is_retryable_error(exc: Optional[BaseException]) -> bool:
    if exc is None:
        return False
    flag = getattr(exc, "retryable", None)
    if isinstance(flag, bool):
        return flag
    if isinstance(exc, (asyncio.TimeoutError, httpx.TransportError, AuthRetryableError)):
        return True
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status >= 500 or status == 429
    message = str(exc).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


async def retry_with_backoff(
    factory: Callable[[], Awaitable[T]],
    *,
    retries: int = 1,
    base_delay: float = 0.5,
    timeout: Optional[float] = None,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `factory()` up to `retries + 1` times with bounded attempts.

    Each attempt is limited by `timeout`. Non-retryable errors stop the loop
    immediately. The last error is re-raised once attempts are exhausted.
    """
    attempts = retries + 1
    for attempt in range(attempts):
        try:
            result = await with_timeout(factory(), timeout, label)
            if attempt:
                logger.info("%s succeeded on attempt %s/%s", label, attempt + 1, attempts)
            return result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s attempt %s/%s failed: %s", label, attempt + 1, attempts, type(exc).__name__)
            if attempt + 1 >= attempts:
                logger.warning("all %s attempts exhausted", label)
                raise
            if not is_retryable_error(exc):
                logger.info("%s failed with a non-retryable error; not retrying", label)
                raise
            await sleep(backoff_delay(attempt, base_delay))
    raise RuntimeError("unreachable")  # pragma: no cover


__all__ = [
    "OperationTimeout",
    "with_timeout",
    "backoff_delay",
    "is_retryable_error",
    "retry_with_backoff",
]
