"""Tests for the per-task frame log (task_events.py)."""
from __future__ import annotations

import json

from fixline.core.task_events import TaskEvent, TaskEventLog, TaskEventRegistry


class TestTaskEvent:
    def test_to_dict_roundtrip(self):
        event = TaskEvent(
            timestamp="2026-01-01T00:00:00",
            direction="in",
            kind="engineer_message",
            summary='{"content": "try restarting"}',
            task_id="100",
        )
        d = event.to_dict()
        assert d["dir"] == "in"
        assert d["kind"] == "engineer_message"
        restored = TaskEvent.from_dict(d)
        assert restored == event

    def test_format_line_inbound(self):
        event = TaskEvent("2026-01-01T12:00:00", "in", "billing_update", '{"unitsUsed": 3}')
        line = event.format_line()
        assert "←" in line
        assert "billing_update" in line
        assert "unitsUsed" in line

    def test_format_line_failed_send(self):
        event = TaskEvent("2026-01-01T12:00:00", "out", "ai_assistant_message", "hello", ok=False)
        line = event.format_line()
        assert "→" in line
        assert "(not delivered)" in line


class TestTaskEventLog:
    def test_append_and_tail(self, tmp_path):
        log = TaskEventLog(str(tmp_path), task_id="100")
        log.append("in", "connected", {})
        log.append("out", "ai_assistant_message", {"content": "hi"})
        log.append("in", "engineer_message", {"content": "hello"})

        events = log.tail(10)
        assert [e.kind for e in events] == ["connected", "ai_assistant_message", "engineer_message"]
        assert events[1].direction == "out"
        assert events[2].task_id == "100"

    def test_tail_limit(self, tmp_path):
        log = TaskEventLog(str(tmp_path), task_id="100")
        for i in range(10):
            log.append("in", f"kind_{i}", {"i": i})

        events = log.tail(3)
        assert len(events) == 3
        assert events[0].kind == "kind_7"
        assert events[2].kind == "kind_9"

    def test_tail_by_direction(self, tmp_path):
        log = TaskEventLog(str(tmp_path), task_id="100")
        log.append("in", "connected", {})
        log.append("out", "ai_assistant_message", {"content": "hi"})
        log.append("in", "engineer_message", {"content": "hello"})

        assert [e.kind for e in log.tail(direction="out")] == ["ai_assistant_message"]
        assert [e.kind for e in log.tail(1, direction="in")] == ["engineer_message"]

    def test_empty_tail(self, tmp_path):
        log = TaskEventLog(str(tmp_path), task_id="100")
        assert log.tail() == []
        assert log.formatted_tail() == "(no events yet)"

    def test_failed_send_recorded(self, tmp_path):
        log = TaskEventLog(str(tmp_path), task_id="100")
        event = log.append("out", "end_session", {"endedBy": "ai-assistant"}, ok=False)
        assert event.ok is False
        assert log.tail()[0].ok is False

    def test_truncates_long_payload(self, tmp_path):
        log = TaskEventLog(str(tmp_path), task_id="100")
        event = log.append("in", "engineer_message", "x" * 1000)
        assert len(event.summary) == 500

    def test_jsonl_format(self, tmp_path):
        log = TaskEventLog(str(tmp_path), task_id="100")
        log.append("in", "session_end", {"endedBy": "engineer"})
        with open(log.path, "r") as f:
            data = json.loads(f.readline())
        assert data["kind"] == "session_end"
        assert data["dir"] == "in"


class TestTaskEventRegistry:
    def test_get_or_create(self, tmp_path):
        registry = TaskEventRegistry(base_dir=str(tmp_path))
        log1 = registry.get_or_create("100")
        log2 = registry.get_or_create("100")
        assert log1 is log2
        assert log1.task_dir == str(tmp_path / "100")
        assert registry.get_or_create("101") is not log1

    def test_default_dir_under_log_dir(self, tmp_path):
        registry = TaskEventRegistry()
        log = registry.get_or_create("42")
        assert log.task_dir == str(tmp_path / "logs" / "tasks" / "42")
