from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

from chomp_gateway.runtime.jobs import Job


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JobAuditLogger:
    """Appends job lifecycle events to a JSONL file from a writer thread.

    Prompt and result text never reach the file; only their sizes do.
    When the queue is full, events are counted and a single summary line is
    written when the writer shuts down.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._dropped_lock = Lock()
        self._dropped = 0
        self._queue: Queue[str | None] | None = None
        self._writer: Thread | None = None
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._queue = Queue(maxsize=max(1, max_queue_size))
        self._writer = Thread(target=self._write_loop, name="job-audit-writer", daemon=True)
        self._writer.start()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def job_dispatched(self, job: Job) -> None:
        self.log(
            {
                "event": "job_dispatched",
                "job_id": job.id,
                "router": job.router,
                "model": job.model,
                "prompt_chars": len(job.prompt),
                "system_chars": len(job.system),
            }
        )

    def job_finished(self, job: Job) -> None:
        event: dict[str, Any] = {
            "event": "job_finished",
            "job_id": job.id,
            "router": job.router,
            "model": job.model,
            "status": job.status.value,
            "latency_ms": job.latency_ms,
            "tokens_in": job.tokens_in,
            "tokens_out": job.tokens_out,
            "result_chars": len(job.result),
        }
        if job.error:
            event["error_chars"] = len(job.error)
        self.log(event)

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        try:
            queue.put_nowait(_encode({"ts": int(time.time()), **event}))
        except Full:
            with self._dropped_lock:
                self._dropped += 1

    def close(self) -> None:
        queue = self._queue
        writer = self._writer
        if queue is None or writer is None:
            return
        queue.put(None)
        writer.join(timeout=2.0)
        self._queue = None
        self._writer = None

    def _write_loop(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while (line := queue.get()) is not None:
                handle.write(line + "\n")
                handle.flush()
            with self._dropped_lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": int(time.time()),
                            "event": "audit_events_dropped",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()
