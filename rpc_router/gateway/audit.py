from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any


def _encode_record(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlRequestLog:
    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._dropped_records = 0
        self._queue: Queue[str | None] | None = None
        self._writer: Thread | None = None
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._queue = Queue(maxsize=max_queue_size)
        self._writer = Thread(
            target=self._write_loop, name="rpc-request-log-writer", daemon=True
        )
        self._writer.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def record(self, event: dict[str, Any]) -> None:
        if self._queue is None:
            return
        line = _encode_record({"ts": round(time.time(), 3), **event})
        try:
            self._queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        if self._queue is None or self._writer is None:
            return
        self._queue.put(None)
        self._writer.join(timeout=2.0)
        self._queue = None
        self._writer = None

    def _write_loop(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = queue.get()
                if line is None:
                    break
                handle.write(line + "\n")
                handle.flush()
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped:
                handle.write(
                    _encode_record(
                        {
                            "ts": round(time.time(), 3),
                            "event": "request_log_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
