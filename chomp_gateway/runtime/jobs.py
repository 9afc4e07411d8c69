from __future__ import annotations

import json
import secrets
import string
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from chomp_gateway.errors import StoreError
from chomp_gateway.runtime.kv import AsyncKeyValueStore

JOB_TTL_SECONDS = 86400
JOB_INDEX_CAP = 100

_BASE36 = string.digits + string.ascii_lowercase


class JobStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_job_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return _to_base36(int(time.time() * 1000)) + suffix


@dataclass(slots=True)
class Job:
    id: str
    caller_token: str
    prompt: str
    system: str = ""
    router: str = ""
    model: str = ""
    status: JobStatus = JobStatus.RUNNING
    result: str = ""
    error: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    created: str = field(default_factory=utc_now_iso)
    finished: str = ""
    latency_ms: int = 0

    def finish_done(
        self,
        result: str,
        *,
        tokens_in: int,
        tokens_out: int,
        latency_ms: int,
    ) -> None:
        self._require_running()
        self.status = JobStatus.DONE
        self.result = result
        self.tokens_in = tokens_in
        self.tokens_out = tokens_out
        self.latency_ms = latency_ms
        self.finished = utc_now_iso()

    def finish_error(self, message: str, *, latency_ms: int) -> None:
        self._require_running()
        self.status = JobStatus.ERROR
        self.error = message
        self.latency_ms = latency_ms
        self.finished = utc_now_iso()

    def _require_running(self) -> None:
        if self.status.is_terminal:
            raise RuntimeError(
                f"Job {self.id} already finished with status {self.status.value}."
            )

    def to_public_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("caller_token", None)
        payload["status"] = self.status.value
        return payload

    def to_record(self) -> str:
        payload = self.to_public_dict()
        payload["caller_token"] = self.caller_token
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_record(cls, raw: str) -> Job:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("Job record must be a JSON object.")
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        values["status"] = JobStatus(values.get("status", JobStatus.RUNNING.value))
        return cls(**values)


def job_key(token: str, job_id: str) -> str:
    return f"job:{token}:{job_id}"


def job_index_key(token: str) -> str:
    return f"jobindex:{token}"


class JobStore:
    """Caller-scoped job records plus a bounded most-recent-first index."""

    def __init__(
        self,
        kv: AsyncKeyValueStore,
        *,
        ttl_seconds: int = JOB_TTL_SECONDS,
        index_cap: int = JOB_INDEX_CAP,
    ) -> None:
        self._kv = kv
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._index_cap = max(1, int(index_cap))

    @property
    def index_cap(self) -> int:
        return self._index_cap

    async def put(self, token: str, job: Job) -> None:
        key = job_key(token, job.id)
        try:
            if job.status is JobStatus.RUNNING:
                existing = await self._read(key)
                if existing is not None and existing.status.is_terminal:
                    raise StoreError(
                        f"Refusing to overwrite finished job {job.id} with a running record."
                    )
            await self._kv.set(key, job.to_record(), ttl_seconds=self._ttl_seconds)
        except StoreError:
            raise
        except Exception as exc:
            raise StoreError(f"Job write failed: {exc}") from exc

    async def get(self, token: str, job_id: str) -> Job | None:
        try:
            return await self._read(job_key(token, job_id))
        except Exception as exc:
            raise StoreError(f"Job read failed: {exc}") from exc

    async def append_to_index(self, token: str, job_id: str) -> None:
        try:
            await self._kv.list_prepend(
                job_index_key(token), job_id, max_length=self._index_cap
            )
        except Exception as exc:
            raise StoreError(f"Job index update failed: {exc}") from exc

    async def index(self, token: str) -> list[str]:
        try:
            return await self._kv.list_range(job_index_key(token), self._index_cap)
        except Exception as exc:
            raise StoreError(f"Job index read failed: {exc}") from exc

    async def list_recent(self, token: str, limit: int = 50) -> list[Job]:
        limit = max(0, min(int(limit), self._index_cap))
        try:
            job_ids = await self._kv.list_range(job_index_key(token), limit)
            raw_records = await self._kv.get_many(
                [job_key(token, job_id) for job_id in job_ids]
            )
        except Exception as exc:
            raise StoreError(f"Job listing failed: {exc}") from exc

        jobs: list[Job] = []
        for raw in raw_records:
            # Expired jobs linger in the index until pushed out by the cap.
            if raw is None:
                continue
            try:
                jobs.append(Job.from_record(raw))
            except (TypeError, ValueError):
                continue
        return jobs

    async def _read(self, key: str) -> Job | None:
        raw = await self._kv.get(key)
        if raw is None:
            return None
        return Job.from_record(raw)
