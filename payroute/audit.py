from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any, Callable


@dataclass(slots=True)
class UsageRecord:
    model: str
    tier: str
    method: str
    cost_estimate: float
    baseline_cost: float
    savings: float
    latency_ms: float
    status: int
    attempts: int = 1
    request_id: str | None = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


UsageHook = Callable[[UsageRecord], None]


class JsonlAuditLogger:
    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="payroute-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return

        line = _encode_line({"ts": int(time.time()), **event})
        queue = self._queue
        if queue is None:
            return
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def log_usage(self, record: UsageRecord) -> None:
        self.log({"event": "usage", **record.to_dict()})

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if not self.enabled or queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                handle.write(
                    _encode_line(
                        {
                            "ts": int(time.time()),
                            "event": "audit_logger_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()


def _encode_line(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
