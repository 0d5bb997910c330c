from __future__ import annotations

import json
import time
from pathlib import Path

from payroute.audit import JsonlAuditLogger, UsageRecord


def _read_lines(path: Path, expected: int) -> list[dict[str, object]]:
    deadline = time.time() + 1.0
    lines: list[str] = []
    while time.time() < deadline:
        if path.exists():
            lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line]
            if len(lines) >= expected:
                break
        time.sleep(0.02)
    return [json.loads(line) for line in lines]


def test_audit_logger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "usage.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    try:
        logger.log({"event": "route_decision", "request_id": "req-1"})

        records = _read_lines(log_path, 1)

        assert records[0]["event"] == "route_decision"
        assert records[0]["request_id"] == "req-1"
        assert isinstance(records[0]["ts"], int)
    finally:
        logger.close()


def test_usage_records_are_written_as_usage_events(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "usage.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    logger.log_usage(
        UsageRecord(
            model="google/gemini-2.5-flash",
            tier="SIMPLE",
            method="rules",
            cost_estimate=0.0001,
            baseline_cost=0.01,
            savings=0.99,
            latency_ms=12.5,
            status=200,
            request_id="req-2",
        )
    )
    logger.close()

    records = _read_lines(log_path, 1)

    assert len(records) == 1
    record = records[0]
    assert record["event"] == "usage"
    assert record["model"] == "google/gemini-2.5-flash"
    assert record["tier"] == "SIMPLE"
    assert record["attempts"] == 1
    assert record["savings"] == 0.99
    assert str(record["timestamp"]).endswith("+00:00")


def test_disabled_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "usage.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=False)

    logger.log({"event": "route_decision"})
    logger.close()

    assert not log_path.exists()
    assert logger.dropped_records == 0
