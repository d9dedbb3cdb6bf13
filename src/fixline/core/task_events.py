"""Per-task frame log: captures every session frame sent or received for a task.

Each task gets an ``events.jsonl`` file under the log directory. Inbound
and outbound frames are recorded with a truncated payload summary, giving
a transcript of the session that survives the process.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional

from fixline.core.logging_config import get_task_log_dir

logger = logging.getLogger("fixline.task_events")


@dataclass
class TaskEvent:
    """A single frame crossing the session channel."""
    timestamp: str
    direction: str      # "in" | "out"
    kind: str           # frame type, e.g. "engineer_message"
    summary: str        # truncated payload
    ok: bool = True     # False when an outbound send failed
    task_id: str = ""

    def to_dict(self) -> dict:
        return {
            "ts": self.timestamp,
            "dir": self.direction,
            "kind": self.kind,
            "summary": self.summary,
            "ok": self.ok,
            "task_id": self.task_id,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TaskEvent":
        return cls(
            timestamp=d.get("ts", ""),
            direction=d.get("dir", ""),
            kind=d.get("kind", ""),
            summary=d.get("summary", ""),
            ok=d.get("ok", True),
            task_id=d.get("task_id", ""),
        )

    def format_line(self) -> str:
        """Human-readable one-line summary."""
        arrow = "←" if self.direction == "in" else "→"
        status = "" if self.ok else " (not delivered)"
        return f"[{self.timestamp}] {arrow} {self.kind}{status}: {self.summary[:120]}"


class TaskEventLog:
    """Append-only frame log for a task, backed by a JSONL file.

    Each write is a single line, so the reader thread and tool threads can
    append concurrently.
    """

    def __init__(self, task_dir: str, task_id: str = "") -> None:
        self.task_dir = task_dir
        self.task_id = task_id
        self._path = os.path.join(task_dir, "events.jsonl")

    @property
    def path(self) -> str:
        return self._path

    def append(self, direction: str, kind: str, payload: object, ok: bool = True) -> TaskEvent:
        """Log a frame. Returns the created event."""
        summary = payload if isinstance(payload, str) else json.dumps(payload, default=str)
        event = TaskEvent(
            timestamp=time.strftime("%Y-%m-%dT%H:%M:%S"),
            direction=direction,
            kind=kind,
            summary=summary[:500],
            ok=ok,
            task_id=self.task_id,
        )
        try:
            os.makedirs(self.task_dir, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to write task event: %s", exc)
        return event

    def tail(self, n: int = 50, direction: Optional[str] = None) -> List[TaskEvent]:
        """Read the last ``n`` events, optionally only one direction ("in" or "out")."""
        if not os.path.exists(self._path):
            return []
        events: deque[TaskEvent] = deque(maxlen=n)
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    event = TaskEvent.from_dict(json.loads(line))
                    if direction is None or event.direction == direction:
                        events.append(event)
        except (OSError, ValueError) as exc:
            logger.error("Failed to read task events from %s: %s", self._path, exc)
            return []
        return list(events)

    def formatted_tail(self, n: int = 50) -> str:
        events = self.tail(n)
        if not events:
            return "(no events yet)"
        return "\n".join(e.format_line() for e in events)


class TaskEventRegistry:
    """One :class:`TaskEventLog` per task id, shared by every tool thread."""

    def __init__(self, base_dir: Optional[str] = None) -> None:
        self._base_dir = base_dir
        self._logs: Dict[str, TaskEventLog] = {}
        self._lock = threading.Lock()

    def get_or_create(self, task_id: str) -> TaskEventLog:
        with self._lock:
            log = self._logs.get(task_id)
            if log is None:
                task_dir = os.path.join(self._base_dir, task_id) if self._base_dir else get_task_log_dir(task_id)
                log = self._logs[task_id] = TaskEventLog(task_dir, task_id)
            return log
