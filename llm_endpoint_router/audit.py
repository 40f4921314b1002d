"""Sinks for the router's structured audit events."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

logger = logging.getLogger(__name__)

REDACTED_KEYS = frozenset({"api_key", "authorization", "x-api-key", "x-goog-api-key"})


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "[redacted]" if str(key).lower() in REDACTED_KEYS else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class AuditLog:
    """Appends events as JSON lines from a writer thread.

    ``record`` never blocks the event loop: when the queue is full the event
    is counted as dropped and a summary line is written on ``close``.
    """

    def __init__(self, path: str | Path, max_queue_size: int = 4096) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._queue: Queue[str | None] = Queue(maxsize=max_queue_size)
        self._dropped = 0
        self._dropped_lock = Lock()
        self._closed = False
        self._writer = Thread(target=self._write_lines, name="router-audit-log", daemon=True)
        self._writer.start()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def record(self, event: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(_encode({"ts": int(time.time()), **redact(event)}))
        except Full:
            with self._dropped_lock:
                self._dropped += 1

    def close(self, timeout: float = 2.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._writer.join(timeout=timeout)

    def _write_lines(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while (line := self._queue.get()) is not None:
                handle.write(line + "\n")
                handle.flush()
            dropped = self.dropped
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": int(time.time()),
                            "event": "audit_log_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )


def fan_out(
    sinks: Iterable[Callable[[dict[str, Any]], None]],
) -> Callable[[dict[str, Any]], None]:
    """Combine several audit sinks into one hook."""
    targets = list(sinks)

    def hook(event: dict[str, Any]) -> None:
        for sink in targets:
            try:
                sink(event)
            except Exception as exc:
                logger.debug("audit_sink_failed event=%s error=%s", event.get("event"), exc)

    return hook


def log_event(event: dict[str, Any]) -> None:
    fields = " ".join(
        f"{key}={value}" for key, value in redact(event).items() if key != "event"
    )
    logger.debug("%s %s", event.get("event", "audit_event"), fields)
