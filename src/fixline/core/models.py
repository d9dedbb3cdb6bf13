"""Records exchanged between the REST client, the session layer and the tools."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# Maximum number of ancestors followed when walking parent_task_id links
MAX_ANCESTRY_DEPTH = 4

TERMINAL_STATUSES = frozenset({"completed", "cancelled", "failed", "overridden"})


class TaskMode(str, Enum):
    QUICK_ANSWER = "realtime_answer"
    EXTENDED_CHAT = "realtime_chat"

    @property
    def label(self) -> str:
        return "quick-query" if self is TaskMode.QUICK_ANSWER else "extended-chat"


class Sender(str, Enum):
    CUSTOMER = "customer"
    COUNTERPART = "counterpart"
    SYSTEM = "system"
    AGENT = "agent"

    @classmethod
    def from_wire(cls, value: str) -> "Sender":
        """Map backend role names onto senders (the backend calls the counterpart ``engineer``)."""
        value = (value or "").replace("-", "_").lower()
        if value in ("engineer", "counterpart"):
            return cls.COUNTERPART
        if value in ("ai_assistant", "agent"):
            return cls.AGENT
        if value == "customer":
            return cls.CUSTOMER
        return cls.SYSTEM


class MessageKind(str, Enum):
    TEXT = "text"
    TEMPLATE_COMMAND = "template_command"
    COMMAND_OUTPUT = "command_output"
    COMMAND_REQUEST = "command_request"


class Decision(str, Enum):
    RECONNECT = "reconnect"
    FOLLOWUP = "followup"
    OVERRIDE = "override"


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S")


@dataclass
class Message:
    sender: Sender
    content: str
    timestamp: str = field(default_factory=_now_iso)
    kind: MessageKind = MessageKind.TEXT

    def format_line(self) -> str:
        return f"[{self.sender.value}]: {self.content}"

    def to_dict(self) -> dict:
        return {
            "sender": self.sender.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
        }


@dataclass
class Task:
    task_id: str
    mode: str
    status: str
    max_budget_units: int = 0
    parent_task_id: Optional[str] = None
    message_preview: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, d: dict) -> "Task":
        parent = d.get("parentTaskId")
        return cls(
            task_id=str(d.get("taskId") or d.get("id") or ""),
            mode=d.get("mode") or d.get("taskMode") or "unknown",
            status=d.get("status", "unknown"),
            max_budget_units=int(d.get("maxBudgetUnits") or d.get("maxCredits") or 0),
            parent_task_id=str(parent) if parent else None,
            message_preview=(d.get("messagePreview") or d.get("message") or "")[:60],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.task_id,
            "mode": self.mode,
            "status": self.status,
            "maxBudgetUnits": self.max_budget_units,
            "parentTaskId": self.parent_task_id,
            "messagePreview": self.message_preview,
        }


@dataclass
class CreatedTask:
    task_id: str
    estimated_wait_seconds: int = 0
    credits_remaining: int = 0
    max_budget_allocated: int = 0
    warning: Optional[str] = None

    @classmethod
    def from_dict(cls, d: dict, warning: Optional[str] = None) -> "CreatedTask":
        return cls(
            task_id=str(d.get("taskId", "")),
            estimated_wait_seconds=int(d.get("estimatedWaitSeconds") or d.get("estimatedWaitTime") or 0),
            credits_remaining=int(d.get("creditsRemaining") or 0),
            max_budget_allocated=int(d.get("maxBudgetAllocated") or d.get("maxCreditsAllocated") or 0),
            warning=d.get("warning") or warning,
        )


@dataclass
class StatusMessage:
    sender: Sender
    content: str
    timestamp: str = ""
    id: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        """Message id, or a timestamp+content composite when the backend sends none."""
        if self.id:
            return f"id:{self.id}"
        return f"ts:{self.timestamp}|{self.content}"

    @classmethod
    def from_dict(cls, d: dict) -> "StatusMessage":
        msg_id = d.get("id")
        return cls(
            sender=Sender.from_wire(d.get("sender", "")),
            content=d.get("content", ""),
            timestamp=str(d.get("timestamp", "")),
            id=str(msg_id) if msg_id not in (None, "") else None,
        )


@dataclass
class TaskStatus:
    status: str
    messages: list[StatusMessage] = field(default_factory=list)
    response: Optional[str] = None
    credits_used: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, d: dict) -> "TaskStatus":
        credits = d.get("creditsUsed")
        return cls(
            status=d.get("status", "unknown"),
            messages=[StatusMessage.from_dict(m) for m in d.get("messages") or []],
            response=d.get("response"),
            credits_used=int(credits) if credits is not None else None,
        )


@dataclass
class Reply:
    text: str
    messages: list[Message] = field(default_factory=list)
    credits_used: Optional[int] = None
    duration_seconds: Optional[int] = None
    ended: bool = False
    closure_requested: bool = False


@dataclass
class DecisionRequest:
    """Returned instead of guessing when a project already has an active task."""

    existing_task: Task
    new_task_mode: TaskMode
    new_task_content: str = ""

    @property
    def options(self) -> list[dict[str, str]]:
        tid = self.existing_task.task_id
        return [
            {
                "action": Decision.RECONNECT.value,
                "description": f"Reconnect to task #{tid} (just listen, don't send the new message)",
            },
            {
                "action": Decision.FOLLOWUP.value,
                "description": f"Add as follow-up to task #{tid} (sends your new message)",
            },
            {
                "action": Decision.OVERRIDE.value,
                "description": f"Replace task #{tid} with a new task (closes #{tid})",
            },
        ]

    @property
    def agent_instruction(self) -> str:
        tid = self.existing_task.task_id
        return (
            "Ask the user which option they prefer for handling the existing active task. "
            "Present all options clearly and wait for their choice before proceeding.\n\n"
            f'To proceed, call this tool again with continueTaskId="{tid}" and one of:\n'
            f'  - decision="reconnect" (reconnect to task #{tid} without sending a new message)\n'
            f'  - decision="followup" (continue task #{tid} with the new message)\n'
            f'  - decision="override" (replace task #{tid} with a new task)'
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "decision_required",
            "agentInstruction": self.agent_instruction,
            "activeTask": {
                "id": self.existing_task.task_id,
                "type": self.existing_task.mode,
                "status": self.existing_task.status,
                "message": self.existing_task.message_preview or "No message",
            },
            "newTask": {
                "type": self.new_task_mode.label,
                "content": self.new_task_content,
            },
            "options": self.options,
        }


@dataclass
class Resolution:
    resume_task_id: Optional[str] = None
    send_message: bool = True
    decision_request: Optional[DecisionRequest] = None
    created_task: Optional[CreatedTask] = None
    decision: Optional[Decision] = None

    @property
    def needs_decision(self) -> bool:
        return self.decision_request is not None
