from __future__ import annotations

import json
import queue
import threading
import time
from typing import Any, Callable, Optional

import pytest

from fixline.core.errors import UpstreamError
from fixline.core.models import CreatedTask, Task, TaskStatus


@pytest.fixture(autouse=True)
def _isolated_log_dir(tmp_path, monkeypatch):
    """Keep the central logs (mcp-calls.log, audit mirror, task frames) out of the home directory."""
    monkeypatch.setenv("FIXLINE_LOG_DIR", str(tmp_path / "logs"))


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeTasksApi:
    """In-memory stand-in for TasksApi that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.active: list[Task] = []
        self.statuses: list[TaskStatus] = [TaskStatus(status="completed")]
        self.tasks: dict[str, Task] = {}
        self.next_id = 100
        self.fail_override = False
        self.fail_upload = False
        self.fail_active = False
        self.warning: Optional[str] = None

    def session_url(self, task_id: str) -> str:
        return f"https://app.test/session/{task_id}"

    def _new_id(self) -> str:
        task_id = str(self.next_id)
        self.next_id += 1
        return task_id

    def create(self, message, mode, max_budget_units, project_id, parent_task_id=None, assignment_timeout_seconds=None):
        self.calls.append(("create", message, mode, max_budget_units, project_id))
        return CreatedTask(task_id=self._new_id(), warning=self.warning)

    def followup(self, parent_task_id, message, max_budget_units, project_id):
        self.calls.append(("followup", parent_task_id, message, max_budget_units, project_id))
        task_id = self._new_id()
        self.tasks[task_id] = Task(task_id, "realtime_answer", "active", parent_task_id=parent_task_id)
        return CreatedTask(task_id=task_id)

    def list_active(self, project_id):
        self.calls.append(("list_active", project_id))
        if self.fail_active:
            raise UpstreamError("directory unavailable", status_code=503)
        return list(self.active)

    def override(self, task_id):
        self.calls.append(("override", task_id))
        if self.fail_override:
            raise UpstreamError("Task is already closed (HTTP 409)", status_code=409)

    def cancel(self, task_id):
        self.calls.append(("cancel", task_id))

    def upload_file(self, task_id, file_name, content, mime_type):
        self.calls.append(("upload_file", task_id, file_name))
        if self.fail_upload:
            raise UpstreamError("storage full (HTTP 507)", status_code=507)
        return len(content)

    def get_status(self, task_id):
        self.calls.append(("get_status", task_id))
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def get_task(self, task_id):
        return self.tasks.get(task_id) or Task(task_id, "realtime_answer", "active")

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeWebSocket:
    """Queue-backed socket: tests push inbound frames, the transport's reader thread consumes them."""

    def __init__(self, auto_connect: bool = True) -> None:
        self.inbound: "queue.Queue[Optional[str]]" = queue.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._lock = threading.Lock()
        if auto_connect:
            self.push("connected", {"taskId": "x"})

    def push(self, frame_type: str, payload: Optional[dict] = None) -> None:
        self.inbound.put(json.dumps({
            "type": frame_type,
            "payload": payload or {},
            "timestamp": "2026-01-01T00:00:00",
        }))

    def drop(self) -> None:
        """Simulate the server going away."""
        self.inbound.put(None)

    def __iter__(self):
        while True:
            item = self.inbound.get()
            if item is None:
                return
            yield item

    def send(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("socket is closed")
        with self._lock:
            self.sent.append(json.loads(data))

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put(None)

    def sent_of(self, frame_type: str) -> list[dict[str, Any]]:
        with self._lock:
            return [f for f in self.sent if f["type"] == frame_type]


@pytest.fixture
def tasks_api() -> FakeTasksApi:
    return FakeTasksApi()


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0.001)
