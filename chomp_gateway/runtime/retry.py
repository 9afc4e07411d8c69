from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")


class RetryTimeoutError(TimeoutError):
    """Raised when the overall retry deadline passes before success."""


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 10
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float | None = None
    timeout: float | None = 60.0

    def delays(self) -> Iterator[float]:
        """Delay before each retry; ``max_attempts`` retries follow the first try."""
        delay = max(0.0, float(self.base_delay))
        for _ in range(max(0, int(self.max_attempts))):
            if self.max_delay is not None:
                yield min(delay, self.max_delay)
            else:
                yield delay
            delay *= self.multiplier


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: type[BaseException] | tuple[type[BaseException], ...],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Run ``operation`` until it succeeds, retrying only ``retry_on`` errors.

    ``policy.timeout`` bounds the whole call, including an attempt that is
    still in flight when the deadline passes.
    """
    if policy.timeout is None:
        return await _attempts(operation, policy, retry_on=retry_on, sleep=sleep, clock=clock)
    scope = asyncio.timeout(max(0.0, float(policy.timeout)))
    try:
        async with scope:
            return await _attempts(
                operation, policy, retry_on=retry_on, sleep=sleep, clock=clock
            )
    except TimeoutError as exc:
        if not scope.expired():
            raise
        raise RetryTimeoutError(f"Retry deadline of {policy.timeout}s exceeded.") from exc


async def _attempts(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: type[BaseException] | tuple[type[BaseException], ...],
    sleep: Callable[[float], Awaitable[None]],
    clock: Callable[[], float],
) -> T:
    deadline = clock() + policy.timeout if policy.timeout is not None else None
    delays = policy.delays()
    while True:
        try:
            return await operation()
        except retry_on as exc:
            delay = next(delays, None)
            if delay is None:
                raise
            if deadline is not None:
                remaining = deadline - clock()
                if remaining <= 0:
                    raise RetryTimeoutError(
                        f"Retry deadline of {policy.timeout}s exceeded."
                    ) from exc
                if delay >= remaining:
                    # Sleep out the remaining budget, then make one last attempt.
                    await sleep(remaining)
                    try:
                        return await operation()
                    except retry_on as final_exc:
                        raise RetryTimeoutError(
                            f"Retry deadline of {policy.timeout}s exceeded."
                        ) from final_exc
            await sleep(delay)
