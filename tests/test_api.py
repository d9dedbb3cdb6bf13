"""Tests for the REST client and task directory wrappers, against httpx.MockTransport."""
from __future__ import annotations

import json

import httpx
import pytest

from fixline.core.errors import AuthenticationError, InsufficientCreditsError, UpstreamError
from fixline.core.models import TaskMode
from fixline.integrations.api import ApiClient
from fixline.integrations.tasks_api import ProjectsApi, TasksApi


class Backend:
    """Routes (method, path) to canned JSON responses and records requests."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"error": "Not found"})
        status, body = self.routes[key]
        return httpx.Response(status, json=body)

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content or b"null")


def _client(backend: Backend) -> ApiClient:
    return ApiClient("https://app.test/api/cli", lambda: "tok-1", transport=httpx.MockTransport(backend))


def test_envelope_is_unwrapped_and_bearer_sent() -> None:
    backend = Backend({("GET", "/api/cli/tasks/7"): (200, {"success": True, "data": {"id": 7, "status": "open"}})})
    client = _client(backend)
    assert client.get("/tasks/7") == {"id": 7, "status": "open"}
    assert backend.requests[0].headers["Authorization"] == "Bearer tok-1"


def test_body_without_envelope_is_returned_as_is() -> None:
    backend = Backend({("GET", "/api/cli/projects"): (200, [{"id": 1}])})
    assert _client(backend).get("/projects") == [{"id": 1}]


def test_unsuccessful_envelope_raises() -> None:
    backend = Backend({("POST", "/api/cli/tasks/7/override"): (200, {"success": False, "error": "Task already closed"})})
    with pytest.raises(UpstreamError, match="Task already closed"):
        _client(backend).post("/tasks/7/override")


def test_http_errors_are_mapped() -> None:
    backend = Backend({
        ("GET", "/api/cli/tasks/1"): (401, {"error": "expired"}),
        ("GET", "/api/cli/tasks/2"): (500, {"error": "database down"}),
    })
    client = _client(backend)
    with pytest.raises(AuthenticationError):
        client.get("/tasks/1")
    with pytest.raises(UpstreamError) as info:
        client.get("/tasks/2")
    assert info.value.status_code == 500
    assert info.value.message == "database down (HTTP 500)"


def test_network_failure_becomes_upstream_error() -> None:
    def boom(request):
        raise httpx.ConnectError("no route to host", request=request)

    client = ApiClient("https://app.test/api/cli", lambda: "tok", transport=httpx.MockTransport(boom))
    with pytest.raises(UpstreamError, match="no route to host"):
        client.get("/tasks/1")


def test_create_task_sends_body_and_keeps_warning() -> None:
    backend = Backend({("POST", "/api/cli/tasks"): (200, {
        "success": True,
        "warning": "Low balance",
        "data": {"taskId": "100", "estimatedWaitSeconds": 45, "creditsRemaining": 80, "maxBudgetAllocated": 10},
    })})
    api = TasksApi(_client(backend), base_url="https://app.test", agent_identifier="pytest")
    created = api.create("why?", TaskMode.QUICK_ANSWER, 10, "p1", assignment_timeout_seconds=120)
    assert created.task_id == "100"
    assert created.estimated_wait_seconds == 45
    assert created.warning == "Low balance"
    assert backend.body() == {
        "message": "why?",
        "mode": "realtime_answer",
        "maxBudgetUnits": 10,
        "projectId": "p1",
        "initiatedBy": "ai_tool",
        "agentIdentifier": "pytest",
        "assignmentTimeoutSeconds": 120,
    }


def test_create_task_without_credits() -> None:
    backend = Backend({("POST", "/api/cli/tasks"): (402, {"error": "No credits left"})})
    api = TasksApi(_client(backend), base_url="https://app.test")
    with pytest.raises(InsufficientCreditsError) as info:
        api.create("why?", TaskMode.QUICK_ANSWER, 10, "p1")
    assert info.value.pricing_url == "https://app.test/pricing"


def test_list_active_filters_terminal_tasks() -> None:
    backend = Backend({("POST", "/api/cli/tasks/active"): (200, {"success": True, "data": {"tasks": [
        {"taskId": "3", "mode": "realtime_chat", "status": "in_progress", "message": "login loop"},
        {"taskId": "2", "mode": "realtime_chat", "status": "completed"},
        {"id": "1", "taskMode": "realtime_answer", "status": "pending"},
    ]}})})
    active = TasksApi(_client(backend)).list_active("p1")
    assert [t.task_id for t in active] == ["3", "1"]
    assert active[0].message_preview == "login loop"
    assert backend.body() == {"projectId": "p1"}


def test_followup_and_status() -> None:
    backend = Backend({
        ("POST", "/api/cli/tasks/55/followup"): (200, {"success": True, "data": {"taskId": "101"}}),
        ("GET", "/api/cli/tasks/101/status"): (200, {"success": True, "data": {
            "status": "completed",
            "creditsUsed": 4,
            "messages": [{"id": "m1", "sender": "engineer", "content": "fixed", "timestamp": "t"}],
        }}),
    })
    api = TasksApi(_client(backend))
    created = api.followup("55", "still broken", 6, "p1")
    assert created.task_id == "101"
    assert backend.body() == {"message": "still broken", "maxBudgetUnits": 6, "projectId": "p1"}
    status = api.get_status("101")
    assert status.is_terminal
    assert status.credits_used == 4
    assert status.messages[0].dedup_key == "id:m1"


def test_upload_file() -> None:
    backend = Backend({("POST", "/api/cli/tasks/100/upload-file"): (200, {"success": True, "data": {"size": 5}})})
    assert TasksApi(_client(backend)).upload_file("100", "a.txt", "hello", "text/plain") == 5
    assert backend.body() == {"fileName": "a.txt", "content": "hello", "mimeType": "text/plain"}


def test_default_project_is_created_when_none_exist() -> None:
    backend = Backend({
        ("GET", "/api/cli/projects"): (200, {"success": True, "data": {"projects": []}}),
        ("POST", "/api/cli/projects"): (200, {"success": True, "data": {"project": {"id": 12}}}),
    })
    assert ProjectsApi(_client(backend)).get_or_create_default() == "12"
    assert backend.body()["repoUrl"] == ProjectsApi.DEFAULT_REPO_URL


def test_most_recent_project_is_reused() -> None:
    backend = Backend({("GET", "/api/cli/projects"): (200, {"success": True, "data": [{"id": 4}, {"id": 2}]})})
    assert ProjectsApi(_client(backend)).get_or_create_default() == "4"
    assert len(backend.requests) == 1


def test_warning_belongs_to_its_own_request() -> None:
    backend = Backend({
        ("POST", "/api/cli/tasks"): (200, {"success": True, "warning": "Low balance", "data": {"taskId": "100"}}),
        ("GET", "/api/cli/tasks/9/status"): (200, {"success": True, "data": {"status": "in_progress"}}),
    })
    client = _client(backend)
    unwrap = client._unwrap

    def unwrap_then_poll(body, url):
        result = unwrap(body, url)
        if url == "/tasks":
            # Another tool thread polls right after the create response is unwrapped
            client.get("/tasks/9/status")
        return result

    client._unwrap = unwrap_then_poll
    created = TasksApi(client).create("why?", TaskMode.QUICK_ANSWER, 10, "p1")
    assert created.warning == "Low balance"
    assert len(backend.requests) == 2

    followup_backend = Backend({("POST", "/api/cli/tasks/100/followup"): (200, {"success": True, "data": {"taskId": "101"}})})
    assert TasksApi(_client(followup_backend)).followup("100", "more", 5, "p1").warning is None


def test_request_with_warning() -> None:
    backend = Backend({("GET", "/api/cli/projects"): (200, {"success": True, "warning": "Trial ends soon", "data": []})})
    assert _client(backend).request_with_warning("GET", "/projects") == ([], "Trial ends soon")
