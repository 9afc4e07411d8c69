from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from chomp_gateway.gateway.audit import JobAuditLogger
from chomp_gateway.runtime.jobs import Job
from tests.client_test_utils import StubUpstream, completion_payload
from tests.dispatcher_test_utils import GROQ_CHAT_URL, Harness


def _read_events(path: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_audit_logger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "jobs.jsonl"
    logger = JobAuditLogger(path=str(log_path), enabled=True)
    try:
        logger.log({"event": "job_dispatched", "job_id": "j1"})

        deadline = time.time() + 1.0
        content = ""
        while time.time() < deadline:
            if log_path.exists():
                content = log_path.read_text(encoding="utf-8")
                if content.strip():
                    break
            time.sleep(0.02)

        assert content.strip()
        payload = json.loads(content.strip().splitlines()[0])
        assert payload["event"] == "job_dispatched"
        assert payload["job_id"] == "j1"
        assert isinstance(payload["ts"], int)
    finally:
        logger.close()


def test_audit_logger_records_sizes_not_text(tmp_path: Path) -> None:
    log_path = tmp_path / "jobs.jsonl"
    logger = JobAuditLogger(path=str(log_path))
    job = Job(id="j1", caller_token="secret-token", prompt="my private prompt", router="groq")
    logger.job_dispatched(job)
    job.finish_done("private answer", tokens_in=4, tokens_out=2, latency_ms=12)
    logger.job_finished(job)
    logger.close()

    dispatched, finished = _read_events(log_path)
    assert dispatched["prompt_chars"] == len("my private prompt")
    assert finished["status"] == "done"
    assert finished["result_chars"] == len("private answer")
    raw = log_path.read_text(encoding="utf-8")
    assert "my private prompt" not in raw
    assert "private answer" not in raw
    assert "secret-token" not in raw


def test_disabled_audit_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "jobs.jsonl"
    logger = JobAuditLogger(path=str(log_path), enabled=False)
    logger.log({"event": "job_dispatched"})
    logger.close()
    assert not log_path.exists()


def test_dispatcher_emits_lifecycle_events(tmp_path: Path) -> None:
    log_path = tmp_path / "jobs.jsonl"
    audit = JobAuditLogger(path=str(log_path))
    stub = StubUpstream().json("POST", GROQ_CHAT_URL, completion_payload())
    harness = Harness(stub, audit=audit)

    async def scenario() -> None:
        token = await harness.register(groq="gsk_x")
        dispatched = await harness.dispatcher.dispatch(token, prompt="hi")
        await harness.dispatcher.wait_for_result(token, dispatched["id"])

    harness.run(scenario)
    audit.close()

    events = [event["event"] for event in _read_events(log_path)]
    assert events == ["job_dispatched", "job_finished"]
