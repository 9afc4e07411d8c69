from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from chomp_gateway.errors import (
    JobNotFoundError,
    JobPendingError,
    PollError,
    StoreError,
)
from chomp_gateway.runtime.jobs import Job, JobStatus, JobStore
from chomp_gateway.runtime.retry import RetryPolicy, RetryTimeoutError, retry_async

DEFAULT_POLL_POLICY = RetryPolicy(
    max_attempts=10,
    base_delay=1.0,
    multiplier=2.0,
    timeout=60.0,
)


class PollEngine:
    def __init__(
        self,
        job_store: JobStore,
        *,
        policy: RetryPolicy = DEFAULT_POLL_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._job_store = job_store
        self._policy = policy
        self._sleep = sleep
        self._clock = clock

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def get(self, token: str, job_id: str) -> Job:
        try:
            job = await self._job_store.get(token, job_id)
        except StoreError as exc:
            raise PollError(exc.message, job_id=job_id) from exc
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def poll_until_done(self, token: str, job_id: str) -> Job:
        # JobNotFoundError is not retried: a job missing on the first read never appears.
        async def poll_once() -> Job:
            job = await self.get(token, job_id)
            if job.status is JobStatus.RUNNING:
                raise JobPendingError(job_id, job.status.value)
            return job

        try:
            return await retry_async(
                poll_once,
                self._policy,
                retry_on=JobPendingError,
                sleep=self._sleep,
                clock=self._clock,
            )
        except (RetryTimeoutError, JobPendingError) as exc:
            if self._policy.timeout is not None:
                message = f"Poll timed out after {self._policy.timeout:g} seconds"
            else:
                message = f"Poll gave up after {self._policy.max_attempts} retries"
            raise PollError(message, job_id=job_id, timed_out=True) from exc
