from __future__ import annotations

import pytest

from fixline.core.audit import read_events
from fixline.core.errors import UpstreamError, ValidationError
from fixline.core.models import Decision, Task, TaskMode
from fixline.core.resolver import ActiveTaskResolver, parse_decision


def _resolve(resolver: ActiveTaskResolver, continue_task_id=None, decision=None, message="why does it crash?"):
    return resolver.resolve(
        "p1", continue_task_id, decision,
        mode=TaskMode.QUICK_ANSWER, message=message, max_budget_units=5,
    )


@pytest.fixture
def active(tasks_api):
    tasks_api.active = [Task("55", "realtime_chat", "in_progress", message_preview="login loop")]
    return tasks_api


def test_no_active_task_creates_new(tasks_api) -> None:
    resolution = _resolve(ActiveTaskResolver(tasks_api))
    assert resolution.resume_task_id is None
    assert resolution.send_message is True
    assert not resolution.needs_decision
    assert tasks_api.names() == ["list_active"]


def test_active_task_without_decision_asks(active) -> None:
    resolution = _resolve(ActiveTaskResolver(active))
    assert resolution.needs_decision
    request = resolution.decision_request.to_dict()
    assert request["status"] == "decision_required"
    assert [o["action"] for o in request["options"]] == ["reconnect", "followup", "override"]
    assert request["activeTask"] == {"id": "55", "type": "realtime_chat", "status": "in_progress", "message": "login loop"}
    assert request["newTask"] == {"type": "quick-query", "content": "why does it crash?"}
    assert 'continueTaskId="55"' in request["agentInstruction"]
    assert "create" not in active.names()


def test_continue_task_id_resumes_without_lookup(active) -> None:
    resolution = _resolve(ActiveTaskResolver(active), continue_task_id="77")
    assert resolution.resume_task_id == "77"
    assert resolution.send_message is True
    assert active.names() == []


def test_reconnect_resumes_silently(active) -> None:
    resolution = _resolve(ActiveTaskResolver(active), decision=Decision.RECONNECT)
    assert resolution.resume_task_id == "55"
    assert resolution.send_message is False


def test_followup_links_parent(active, tmp_path) -> None:
    resolver = ActiveTaskResolver(active, data_dir=str(tmp_path))
    resolution = _resolve(resolver, continue_task_id="55", decision=Decision.FOLLOWUP, message="still broken")
    assert active.calls[-1] == ("followup", "55", "still broken", 5, "p1")
    assert resolution.resume_task_id == resolution.created_task.task_id == "100"
    assert active.tasks["100"].parent_task_id == "55"
    assert read_events(str(tmp_path))[-1]["type"] == "task.followup"


def test_override_closes_existing_then_creates(active, tmp_path) -> None:
    resolver = ActiveTaskResolver(active, data_dir=str(tmp_path))
    resolution = _resolve(resolver, decision=Decision.OVERRIDE)
    assert ("override", "55") in active.calls
    assert resolution.resume_task_id is None
    assert resolution.send_message is True
    assert read_events(str(tmp_path))[-1]["payload"] == {"task_id": "55"}


def test_failed_override_creates_nothing(active) -> None:
    active.fail_override = True
    with pytest.raises(UpstreamError, match="No new task was created") as info:
        _resolve(ActiveTaskResolver(active), decision=Decision.OVERRIDE)
    assert info.value.status_code == 409
    assert "create" not in active.names()
    assert "followup" not in active.names()


def test_directory_failure_fails_open(tasks_api) -> None:
    tasks_api.fail_active = True
    resolution = _resolve(ActiveTaskResolver(tasks_api))
    assert resolution.resume_task_id is None
    assert not resolution.needs_decision


def test_most_recent_active_task_is_used(tasks_api) -> None:
    tasks_api.active = [Task("9", "realtime_answer", "open"), Task("3", "realtime_answer", "open")]
    resolution = _resolve(ActiveTaskResolver(tasks_api), decision=Decision.RECONNECT)
    assert resolution.resume_task_id == "9"


def test_parse_decision() -> None:
    assert parse_decision(None) is None
    assert parse_decision("") is None
    assert parse_decision("FOLLOWUP") is Decision.FOLLOWUP
    with pytest.raises(ValidationError, match="Unknown decision"):
        parse_decision("merge")
