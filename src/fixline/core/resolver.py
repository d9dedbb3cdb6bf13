"""Decide whether a tool call creates a new task or continues an existing one.

When the project already has an unfinished task and the caller did not say
what to do with it, the resolver returns a :class:`DecisionRequest` instead
of picking for them.
"""
from __future__ import annotations

import logging
from typing import Optional

from fixline.core.audit import log_event
from fixline.core.errors import UpstreamError, ValidationError
from fixline.core.models import Decision, DecisionRequest, Resolution, Task, TaskMode
from fixline.integrations.tasks_api import TasksApi

logger = logging.getLogger("fixline.resolver")


def parse_decision(value: Optional[str]) -> Optional[Decision]:
    if value in (None, ""):
        return None
    try:
        return Decision(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown decision '{value}'. Use one of: reconnect, followup, override"
        ) from None


class ActiveTaskResolver:
    def __init__(self, tasks_api: TasksApi, data_dir: Optional[str] = None) -> None:
        self.tasks_api = tasks_api
        self.data_dir = data_dir

    def resolve(
        self,
        project_id: str,
        continue_task_id: Optional[str] = None,
        decision: Optional[Decision] = None,
        *,
        mode: TaskMode,
        message: str,
        max_budget_units: int,
    ) -> Resolution:
        if continue_task_id:
            if decision is None:
                logger.info("Resuming task %s as requested by caller", continue_task_id)
                return Resolution(resume_task_id=continue_task_id, send_message=True)
            return self._apply(decision, continue_task_id, project_id, message, max_budget_units)

        existing = self._most_recent_active(project_id)
        if existing is None:
            return Resolution(resume_task_id=None, send_message=True)

        if decision is None:
            logger.info("Active task %s found for project %s, asking caller to decide", existing.task_id, project_id)
            return Resolution(
                decision_request=DecisionRequest(
                    existing_task=existing,
                    new_task_mode=mode,
                    new_task_content=message,
                )
            )
        return self._apply(decision, existing.task_id, project_id, message, max_budget_units)

    def _most_recent_active(self, project_id: str) -> Optional[Task]:
        try:
            active = self.tasks_api.list_active(project_id)
        except Exception as exc:  # noqa: BLE001
            # Fail open: a broken directory query must not block the primary flow
            logger.warning("Active task lookup failed for project %s, continuing as if none: %s", project_id, exc)
            return None
        return active[0] if active else None

    def _apply(
        self,
        decision: Decision,
        task_id: str,
        project_id: str,
        message: str,
        max_budget_units: int,
    ) -> Resolution:
        logger.info("Applying decision %s to task %s", decision.value, task_id)
        if decision is Decision.RECONNECT:
            return Resolution(resume_task_id=task_id, send_message=False, decision=decision)

        if decision is Decision.FOLLOWUP:
            created = self.tasks_api.followup(task_id, message, max_budget_units, project_id)
            log_event(self.data_dir, "task.followup", {
                "parent_task_id": task_id,
                "task_id": created.task_id,
                "max_budget_units": max_budget_units,
            })
            return Resolution(
                resume_task_id=created.task_id,
                send_message=True,
                created_task=created,
                decision=decision,
            )

        try:
            self.tasks_api.override(task_id)
        except UpstreamError as exc:
            logger.error("Override of task %s failed, not creating a replacement: %s", task_id, exc)
            raise UpstreamError(
                f"Could not override task #{task_id}: {exc.message}. No new task was created.",
                status_code=exc.status_code,
                details=exc.details,
            ) from exc
        log_event(self.data_dir, "task.override", {"task_id": task_id})
        return Resolution(resume_task_id=None, send_message=True, decision=decision)
