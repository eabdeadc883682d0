from __future__ import annotations

import asyncio
from typing import List

import pytest

from core.errors import CallTimeoutError, UpstreamError, ValidationError
from core.resilience import RetryPolicy, execute_with_resilience, with_retry, with_timeout


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_retry_fails_twice_then_succeeds() -> None:
    calls = 0
    sleep = SleepRecorder()

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise UpstreamError("unavailable", endpoint="GET /workflows", status_code=503)
        return "ok"

    result = await with_retry(flaky, max_retries=3, base_delay=1.0, sleep=sleep)

    assert result == "ok"
    assert calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_reraises_last_error_when_exhausted() -> None:
    calls = 0
    sleep = SleepRecorder()

    async def always_down() -> None:
        nonlocal calls
        calls += 1
        raise UpstreamError(f"down {calls}", status_code=502)

    with pytest.raises(UpstreamError, match="down 3"):
        await with_retry(always_down, max_retries=3, base_delay=0.5, sleep=sleep)
    assert calls == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_never_retries_validation_error() -> None:
    calls = 0
    sleep = SleepRecorder()

    async def invalid() -> None:
        nonlocal calls
        calls += 1
        raise ValidationError("bad args")

    with pytest.raises(ValidationError):
        await with_retry(invalid, max_retries=3, sleep=sleep)
    assert calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_retry_does_not_retry_client_errors() -> None:
    calls = 0

    async def not_found() -> None:
        nonlocal calls
        calls += 1
        raise UpstreamError("missing", status_code=404)

    with pytest.raises(UpstreamError):
        await with_retry(not_found, max_retries=3, sleep=SleepRecorder())
    assert calls == 1


@pytest.mark.asyncio
async def test_retry_does_not_catch_plain_exceptions() -> None:
    async def broken() -> None:
        raise ZeroDivisionError

    with pytest.raises(ZeroDivisionError):
        await with_retry(broken, sleep=SleepRecorder())


@pytest.mark.asyncio
async def test_timeout_fires_once_duration_elapses_not_before() -> None:
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(CallTimeoutError) as info:
        await with_timeout(lambda: asyncio.sleep(10), 0.1)

    elapsed = loop.time() - started
    assert elapsed >= 0.09
    assert elapsed < 5
    assert info.value.details["timeoutSeconds"] == 0.1


@pytest.mark.asyncio
async def test_timeout_cancels_the_losing_operation() -> None:
    cancelled = asyncio.Event()

    async def hangs() -> None:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(CallTimeoutError):
        await with_timeout(hangs, 0.01)
    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_timeout_returns_result_when_fast_enough() -> None:
    async def quick() -> int:
        return 42

    assert await with_timeout(quick, 1.0) == 42


@pytest.mark.asyncio
async def test_resilience_times_out_each_attempt_then_retries() -> None:
    calls = 0
    sleep = SleepRecorder()

    async def slow_then_fast() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(10)
        return "done"

    policy = RetryPolicy(max_retries=3, base_delay=0.25, timeout=0.05)
    assert await execute_with_resilience(slow_then_fast, policy, sleep=sleep) == "done"
    assert calls == 2
    assert sleep.delays == [0.25]


def test_single_attempt_policy_keeps_timeout() -> None:
    policy = RetryPolicy(max_retries=3, base_delay=1.0, timeout=12.0).single_attempt()
    assert policy.max_retries == 1
    assert policy.timeout == 12.0
