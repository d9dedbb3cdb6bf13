"""Suggest moving a quick query to an extended chat once follow-ups pile up."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fixline.core.models import MAX_ANCESTRY_DEPTH, TaskMode
from fixline.integrations.tasks_api import TasksApi

logger = logging.getLogger("fixline.escalation")

ESCALATION_DEPTH = 2


@dataclass
class EscalationAdvice:
    should_escalate: bool = False
    depth: int = 0
    reason: str = ""

    def hint(self) -> str:
        if not self.should_escalate:
            return ""
        return (
            f"Note: this question has been followed up {self.depth} times. "
            "Consider switching to extended-chat so the engineer can work "
            "through the problem with you in real time."
        )


def ancestry_depth(tasks_api: TasksApi, task_id: str, max_depth: int = MAX_ANCESTRY_DEPTH) -> int:
    """Count parent links above ``task_id``, stopping at ``max_depth`` or a cycle."""
    depth = 0
    seen = {task_id}
    current: Optional[str] = task_id
    while current and depth < max_depth:
        parent = tasks_api.get_task(current).parent_task_id
        if not parent or parent in seen:
            break
        seen.add(parent)
        depth += 1
        current = parent
    return depth


def analyze_escalation(tasks_api: TasksApi, task_id: str, mode: TaskMode) -> EscalationAdvice:
    try:
        depth = ancestry_depth(tasks_api, task_id)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Could not walk ancestry of task %s: %s", task_id, exc)
        return EscalationAdvice()
    if depth >= ESCALATION_DEPTH and mode is TaskMode.QUICK_ANSWER:
        return EscalationAdvice(
            should_escalate=True,
            depth=depth,
            reason=f"{depth} follow-ups on a quick query",
        )
    return EscalationAdvice(depth=depth)
