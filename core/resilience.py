"""Timeout and retry combinators applied to every outbound tool call."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from core.errors import CallTimeoutError, GatewayError

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Resilience settings for one tool.

    max_retries is the total number of attempts, so the default of 3 means
    one try plus two retries. timeout applies to each attempt separately.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    timeout: float = 30.0

    def single_attempt(self) -> "RetryPolicy":
        return RetryPolicy(max_retries=1, base_delay=self.base_delay, timeout=self.timeout)


async def with_timeout(operation: Operation[T], timeout: float) -> T:
    """
    Run operation, failing with CallTimeoutError once timeout seconds elapse.

    The losing operation is cancelled, so an in-flight httpx request gives
    its socket back to the pool instead of being left running.
    """
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError:
        raise CallTimeoutError(
            f"Operation timed out after {timeout:g}s",
            {"timeoutSeconds": timeout},
        ) from None


async def with_retry(
    operation: Operation[T],
    max_retries: int = 3,
    base_delay: float = 1.0,
    sleep: Sleeper = asyncio.sleep,
    label: str = "operation",
) -> T:
    """
    Retry operation with exponential backoff.

    Delay before attempt n+1 is base_delay * 2 ** (n - 1). Only GatewayErrors
    flagged retryable are retried; anything else propagates immediately.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")

    last_error: Optional[GatewayError] = None
    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except GatewayError as exc:
            if not exc.retryable:
                raise
            last_error = exc
            if attempt == max_retries:
                break
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "{} failed with {} (attempt {}/{}), retrying in {:.2f}s",
                label,
                exc.kind.value,
                attempt,
                max_retries,
                delay,
            )
            await sleep(delay)

    assert last_error is not None
    raise last_error


async def execute_with_resilience(
    operation: Operation[T],
    policy: RetryPolicy,
    sleep: Sleeper = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Timeout wraps each attempt; retry wraps the sequence of timed attempts."""

    async def timed() -> T:
        return await with_timeout(operation, policy.timeout)

    return await with_retry(
        timed,
        max_retries=policy.max_retries,
        base_delay=policy.base_delay,
        sleep=sleep,
        label=label,
    )
