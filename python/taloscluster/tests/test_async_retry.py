import asyncio
import time

import pytest

from taloscluster.utils.async_retry import (
    ExpectedError,
    RetryTimeoutError,
    async_retry,
    retry_until,
)


def test_retry_until_returns_after_expected_errors():
    attempts = []

    async def probe():
        attempts.append(1)
        if len(attempts) < 3:
            raise ExpectedError("not yet")
        return "ready"

    result = asyncio.run(retry_until(probe, timeout=5, interval=0, description="thing"))
    assert result == "ready"
    assert len(attempts) == 3


def test_retry_until_times_out_with_last_error():
    async def probe():
        raise ExpectedError("still booting")

    with pytest.raises(RetryTimeoutError) as info:
        asyncio.run(retry_until(probe, timeout=0.05, interval=0.01, description="node"))
    assert isinstance(info.value.last_error, ExpectedError)
    assert "still booting" in str(info.value)
    assert "node" in str(info.value)


def test_retry_until_propagates_fatal_errors_immediately():
    attempts = []

    async def probe():
        attempts.append(1)
        raise PermissionError("denied")

    with pytest.raises(PermissionError):
        asyncio.run(retry_until(probe, timeout=5, interval=0, description="node"))
    assert len(attempts) == 1


def test_async_retry_gives_up_after_retries():
    attempts = []

    @async_retry(retries=3, delay=0)
    async def flaky():
        attempts.append(1)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        asyncio.run(flaky())
    assert len(attempts) == 3


def test_async_retry_returns_first_success():
    attempts = []

    @async_retry(retries=3, delay=0)
    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("boom")
        return 42

    assert asyncio.run(flaky()) == 42
    assert len(attempts) == 2


def test_retry_until_stops_promptly_when_cancelled():
    attempts = []

    async def probe():
        attempts.append(1)
        raise ExpectedError("not yet")

    async def cancel_mid_wait():
        task = asyncio.ensure_future(
            retry_until(probe, timeout=300, interval=60, description="node")
        )
        while not attempts:
            await asyncio.sleep(0)
        started = time.monotonic()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        elapsed = time.monotonic() - started
        await asyncio.sleep(0.05)
        return elapsed

    assert asyncio.run(cancel_mid_wait()) < 1
    assert len(attempts) == 1
