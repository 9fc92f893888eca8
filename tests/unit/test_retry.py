"""Tests for the bounded retry combinator."""

import asyncio

import pytest

from mcp_bridge.retry import RetryExhausted, retry_async


class Flaky:
    """Fails a fixed number of times, then returns a value."""

    def __init__(self, failures, error=OSError("temporary")):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


@pytest.mark.asyncio
async def test_succeeds_after_failures():
    op = Flaky(failures=2)

    result = await retry_async(op, attempts=3, delay=0.01)

    assert result == "done"
    assert op.calls == 3


@pytest.mark.asyncio
async def test_exhausted_carries_last_error():
    op = Flaky(failures=10, error=OSError("still down"))

    with pytest.raises(RetryExhausted) as exc_info:
        await retry_async(op, attempts=3, delay=0.01, label="connect")

    assert op.calls == 3
    assert exc_info.value.attempts == 3
    assert str(exc_info.value.last_error) == "still down"
    assert "connect failed after 3 attempts" in str(exc_info.value)


@pytest.mark.asyncio
async def test_non_retryable_raises_immediately():
    op = Flaky(failures=10, error=ValueError("bad input"))

    with pytest.raises(ValueError):
        await retry_async(op, attempts=5, delay=0.01, retryable=lambda e: not isinstance(e, ValueError))

    assert op.calls == 1


@pytest.mark.asyncio
async def test_per_attempt_timeout():
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await asyncio.sleep(5)

    with pytest.raises(RetryExhausted) as exc_info:
        await retry_async(slow, attempts=2, delay=0.01, timeout=0.05, label="tools/list")

    assert calls == 2
    assert isinstance(exc_info.value.last_error, asyncio.TimeoutError)
    assert "tools/list timed out" in str(exc_info.value.last_error)


@pytest.mark.asyncio
async def test_on_error_sees_each_attempt():
    seen = []
    op = Flaky(failures=2)

    await retry_async(op, attempts=3, delay=0.01, on_error=lambda e, attempt: seen.append(attempt))

    assert seen == [1, 2]


@pytest.mark.asyncio
async def test_attempts_must_be_positive():
    with pytest.raises(ValueError):
        await retry_async(Flaky(0), attempts=0, delay=0)
