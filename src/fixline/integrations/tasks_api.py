"""Task directory and project endpoints.

Pure request/response wrappers: nothing here keeps state between calls.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fixline.core.errors import InsufficientCreditsError, UpstreamError
from fixline.core.models import CreatedTask, Task, TaskMode, TaskStatus
from fixline.integrations.api import ApiClient

logger = logging.getLogger("fixline.tasks_api")


class TasksApi:
    def __init__(self, client: ApiClient, base_url: str = "", agent_identifier: str = "Unknown") -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.agent_identifier = agent_identifier

    def session_url(self, task_id: str) -> str:
        return f"{self.base_url}/session/{task_id}"

    def create(
        self,
        message: str,
        mode: TaskMode,
        max_budget_units: int,
        project_id: str,
        parent_task_id: Optional[str] = None,
        assignment_timeout_seconds: Optional[int] = None,
    ) -> CreatedTask:
        logger.info("Creating task: mode=%s budget=%s project=%s", mode.value, max_budget_units, project_id)
        body: dict[str, Any] = {
            "message": message,
            "mode": mode.value,
            "maxBudgetUnits": max_budget_units,
            "projectId": project_id,
            "initiatedBy": "ai_tool",
            "agentIdentifier": self.agent_identifier,
        }
        if parent_task_id:
            body["parentTaskId"] = parent_task_id
        if assignment_timeout_seconds:
            body["assignmentTimeoutSeconds"] = assignment_timeout_seconds
        try:
            data, warning = self.client.request_with_warning("POST", "/tasks", body)
        except UpstreamError as exc:
            if "no credits" in exc.message.lower() or exc.status_code == 402:
                raise InsufficientCreditsError(max_budget_units, f"{self.base_url}/pricing") from exc
            raise
        task = CreatedTask.from_dict(data or {}, warning=warning)
        if not task.task_id:
            raise UpstreamError("Task creation returned no task id", details=data if isinstance(data, dict) else {})
        logger.info("Task created: %s", task.task_id)
        return task

    def get_status(self, task_id: str) -> TaskStatus:
        logger.debug("Getting task status: %s", task_id)
        return TaskStatus.from_dict(self.client.get(f"/tasks/{task_id}/status") or {})

    def get_task(self, task_id: str) -> Task:
        return Task.from_dict(self.client.get(f"/tasks/{task_id}") or {})

    def list_active(self, project_id: str) -> list[Task]:
        data = self.client.post("/tasks/active", {"projectId": project_id})
        if isinstance(data, dict):
            data = data.get("tasks", [])
        tasks = [Task.from_dict(item) for item in data or []]
        return [t for t in tasks if not t.is_terminal]

    def override(self, task_id: str) -> None:
        logger.info("Overriding task %s", task_id)
        self.client.post(f"/tasks/{task_id}/override")

    def cancel(self, task_id: str) -> None:
        logger.info("Cancelling task %s", task_id)
        self.client.post(f"/tasks/{task_id}/cancel")

    def followup(
        self,
        parent_task_id: str,
        message: str,
        max_budget_units: int,
        project_id: str,
    ) -> CreatedTask:
        logger.info("Creating follow-up for task %s", parent_task_id)
        data, warning = self.client.request_with_warning(
            "POST",
            f"/tasks/{parent_task_id}/followup",
            {"message": message, "maxBudgetUnits": max_budget_units, "projectId": project_id},
        )
        task = CreatedTask.from_dict(data or {}, warning=warning)
        if not task.task_id:
            raise UpstreamError("Follow-up creation returned no task id")
        return task

    def upload_file(self, task_id: str, file_name: str, content: str, mime_type: str) -> int:
        """Upload one attachment; returns the size the backend recorded."""
        data = self.client.post(
            f"/tasks/{task_id}/upload-file",
            {"fileName": file_name, "content": content, "mimeType": mime_type},
        )
        return int((data or {}).get("size", 0)) if isinstance(data, dict) else 0


class ProjectsApi:
    DEFAULT_REPO_URL = "fixline quick queries"

    def __init__(self, client: ApiClient) -> None:
        self.client = client

    def list(self) -> list[dict]:
        data = self.client.get("/projects")
        if isinstance(data, dict):
            data = data.get("projects", [])
        return list(data or [])

    def create(self, repo_url: str, problem_description: str | None = None) -> dict:
        data = self.client.post("/projects", {"repoUrl": repo_url, "problemDescription": problem_description})
        if isinstance(data, dict) and "project" in data:
            data = data["project"]
        if not data:
            raise UpstreamError("No project returned from API")
        return data

    def get_or_create_default(self) -> str:
        """Return the most recent project's id, creating a default project if none exist."""
        projects = self.list()
        if projects:
            return str(projects[0]["id"])
        logger.info("No projects found, creating default project")
        project = self.create(self.DEFAULT_REPO_URL, "Default project for quick questions and chat sessions")
        return str(project["id"])
