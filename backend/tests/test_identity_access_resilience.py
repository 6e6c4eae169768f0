"""
Timeouts cancel the underlying work; retries are bounded and selective.
"""
from __future__ import annotations

import asyncio

import httpx
import pytest
from supabase import AuthApiError, AuthRetryableError

from backend.identity_access.resilience import (
    OperationTimeout,
    backoff_delay,
    is_retryable_error,
    retry_with_backoff,
    with_timeout,
)


@pytest.mark.anyio
async def test_with_timeout_cancels_the_operation():
    cancelled = asyncio.Event()

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(OperationTimeout) as excinfo:
        await with_timeout(slow(), 0.01, "session fetch")
    assert cancelled.is_set()
    assert "session fetch" in str(excinfo.value)
    assert excinfo.value.retryable is True


@pytest.mark.anyio
async def test_with_timeout_none_means_unbounded():
    async def quick():
        return 42

    assert await with_timeout(quick(), None) == 42


def test_backoff_doubles():
    assert [backoff_delay(n, 0.5) for n in range(3)] == [0.5, 1.0, 2.0]


@pytest.mark.parametrize(
    "exc,expected",
    [
        (OperationTimeout("x", 1), True),
        (AuthRetryableError("down", 0), True),
        (AuthApiError("Invalid login credentials", 400, "invalid_credentials"), False),
        (AuthApiError("upstream", 503, None), True),
        (AuthApiError("slow down", 429, "over_request_rate_limit"), True),
        (httpx.ConnectError("refused"), True),
        (RuntimeError("Network request failed"), True),
        (RuntimeError("Invalid credentials"), False),
        (None, False),
    ],
)
def test_is_retryable_error(exc, expected):
    assert is_retryable_error(exc) is expected


@pytest.mark.anyio
async def test_retry_recovers_from_one_transient_failure():
    attempts = []
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise AuthRetryableError("network blip", 0)
        return "ok"

    result = await retry_with_backoff(flaky, retries=1, base_delay=0.25, sleep=fake_sleep)
    assert result == "ok"
    assert len(attempts) == 2
    assert sleeps == [0.25]


@pytest.mark.anyio
async def test_retry_stops_on_non_retryable_error():
    attempts = []

    async def rejected():
        attempts.append(1)
        raise AuthApiError("Invalid login credentials", 400, "invalid_credentials")

    with pytest.raises(AuthApiError):
        await retry_with_backoff(rejected, retries=3, base_delay=0)
    assert len(attempts) == 1


@pytest.mark.anyio
async def test_retry_reraises_last_timeout_after_exhausting_attempts():
    attempts = []

    async def hangs():
        attempts.append(1)
        await asyncio.sleep(10)

    with pytest.raises(OperationTimeout):
        await retry_with_backoff(hangs, retries=1, base_delay=0, timeout=0.01, label="session fetch")
    assert len(attempts) == 2
