"""The agent-facing tools: ``quick-query``, ``extended-chat`` and ``listen``.

The two chat tools validate their arguments before touching the network,
resolve what to do about an already-active task, create or resume a task,
wait for the engineer and render the reply as text for the agent.
``listen`` only reads the open sessions and the per-task event logs.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fixline.core.attachments import Attachment, parse_attachments, upload_attachments
from fixline.core.audit import log_event
from fixline.core.coordinator import PollReplyWaiter, PushReplyWaiter
from fixline.core.errors import (
    AuthenticationError,
    ConfigError,
    FixlineError,
    InsufficientCreditsError,
    ReplyTimeoutError,
    SessionConnectionError,
    UpstreamError,
    ValidationError,
)
from fixline.core.escalation import analyze_escalation
from fixline.core.models import CreatedTask, Reply, Sender, TaskMode
from fixline.core.resolver import ActiveTaskResolver, parse_decision
from fixline.core.sessions import Session, SessionRegistry
from fixline.core.task_events import TaskEventRegistry
from fixline.core.transport import SessionTransport, build_ws_url, default_connector
from fixline.integrations.tasks_api import ProjectsApi, TasksApi

logger = logging.getLogger("fixline.tools")

QUICK_BUDGET = (1, 10, 10)  # min, max, default
CHAT_BUDGET = (4, 1920, 240)
QUICK_TIMEOUT = (30, 1800, 300)
ASSIGNMENT_TIMEOUT = (30, 1800)

_COMPLETION_RE = re.compile(r"\b(COMPLETE|FINISHED|ALL DONE)\b")
_TASK_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")
LISTEN_TAIL = 10
LISTEN_TAIL_VERBOSE = 50


@dataclass
class ToolResult:
    text: str
    is_error: bool = False

    def to_mcp(self) -> dict[str, Any]:
        return {"content": [{"type": "text", "text": self.text}], "isError": self.is_error}


# ── argument parsing ─────────────────────────────────────


def _require_message(args: dict[str, Any]) -> str:
    message = args.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("message is required")
    return message


def _budget(args: dict[str, Any], bounds: tuple[int, int, int], label: str) -> int:
    low, high, default = bounds
    raw = args.get("maxBudgetUnits", args.get("maxCredits"))
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or int(raw) != raw:
        raise ValidationError(f"maxBudgetUnits must be a whole number between {low} and {high} for {label}")
    value = int(raw)
    if value < low or value > high:
        raise ValidationError(f"maxBudgetUnits must be between {low} and {high} for {label}")
    return value


def _reply_timeout(args: dict[str, Any]) -> float:
    low, high, default = QUICK_TIMEOUT
    raw = args.get("timeoutSeconds")
    if raw is None:
        return float(default)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValidationError("timeoutSeconds must be a number")
    return float(min(max(raw, low), high))


def _assignment_timeout(args: dict[str, Any]) -> Optional[int]:
    raw = args.get("assignmentTimeoutSeconds")
    if raw is None:
        return None
    low, high = ASSIGNMENT_TIMEOUT
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValidationError("assignmentTimeoutSeconds must be a number")
    if raw < low or raw > high:
        raise ValidationError(f"assignmentTimeoutSeconds must be between {low} and {high}")
    return int(raw)


def _optional_str(args: dict[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if value in (None, ""):
        return None
    return str(value)


# ── formatting ───────────────────────────────────────────


def _describe_session(session: Session) -> str:
    text = f"{session.state.value}, {session.mode.label}, {len(session.buffer)} buffered"
    if session.pending is not None:
        text += ", a call is waiting"
    if session.units_used is not None:
        text += f", {session.units_used} units used"
    if session.ended:
        text += ", ended"
    return text


def _meta_line(reply: Reply) -> str:
    parts = []
    if reply.credits_used is not None:
        parts.append(f"credits used: {reply.credits_used}")
    if reply.duration_seconds is not None:
        parts.append(f"duration: {reply.duration_seconds}s")
    return f"({', '.join(parts)})" if parts else ""


def continuation_directive(task_id: str) -> str:
    return (
        "The session is still open. Act on the engineer's message, then call extended-chat again "
        f'with continueTaskId="{task_id}", previouslyConnected=true and a message describing what '
        "you did and what you found. Do not return control to the user until the engineer ends the session."
    )


def _counterpart_text(reply: Reply) -> str:
    return "\n".join(m.content for m in reply.messages if m.sender is Sender.COUNTERPART)


def describe_error(exc: BaseException, tool: str) -> str:
    """Short, human-readable text naming what failed."""
    if isinstance(exc, InsufficientCreditsError):
        return f"Error: {exc.message}"
    if isinstance(exc, AuthenticationError):
        return f"Error: Authentication failed: {exc.message}"
    if isinstance(exc, UpstreamError):
        return f"Error: Backend request failed: {exc.message}"
    if isinstance(exc, ReplyTimeoutError):
        return f"Error: {exc}"
    if isinstance(exc, SessionConnectionError):
        return f"Error: Session connection failed: {exc}"
    if isinstance(exc, ConfigError):
        return f"Error: Configuration problem: {exc}"
    if isinstance(exc, FixlineError):
        return f"Error: {exc}"
    return f"Error: Unexpected error in {tool}: {exc}"


class ToolFacade:
    """Implements the agent tools on top of the REST client and the session layer.

    The façade owns nothing long-lived except the project id it resolved;
    sessions belong to the :class:`SessionRegistry` passed in.
    """

    def __init__(
        self,
        tasks_api: TasksApi,
        projects_api: Optional[ProjectsApi],
        sessions: SessionRegistry,
        *,
        token_provider: Callable[[], str],
        ws_base: str,
        project_id: Optional[str] = None,
        data_dir: Optional[str] = None,
        reply_timeout: float = 300.0,
        poll_interval: float = 3.0,
        handshake_timeout: float = 15.0,
        disconnect_grace: float = 0.5,
        event_registry: Optional[TaskEventRegistry] = None,
        connector: Callable[[str, str, float], Any] = default_connector,
    ) -> None:
        self.tasks_api = tasks_api
        self.projects_api = projects_api
        self.sessions = sessions
        self.token_provider = token_provider
        self.ws_base = ws_base
        self.project_id = project_id
        self.data_dir = data_dir
        self.reply_timeout = reply_timeout
        self.poll_interval = poll_interval
        self.handshake_timeout = handshake_timeout
        self.disconnect_grace = disconnect_grace
        self.event_registry = event_registry or TaskEventRegistry()
        self.connector = connector
        self.resolver = ActiveTaskResolver(tasks_api, data_dir=data_dir)

    # ── entry points ──────────────────────────────────────

    def quick_query(self, args: dict[str, Any]) -> ToolResult:
        return self._guarded(TaskMode.QUICK_ANSWER.label, self._quick_query, args)

    def extended_chat(self, args: dict[str, Any]) -> ToolResult:
        return self._guarded(TaskMode.EXTENDED_CHAT.label, self._extended_chat, args)

    def listen(self, args: dict[str, Any]) -> ToolResult:
        return self._guarded("listen", self._listen, args)

    def _guarded(self, label: str, fn: Callable[[dict[str, Any]], ToolResult], args: dict[str, Any]) -> ToolResult:
        try:
            return fn(args or {})
        except FixlineError as exc:
            logger.warning("%s failed: %s", label, exc)
            return ToolResult(describe_error(exc, label), is_error=True)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error in %s", label)
            return ToolResult(describe_error(exc, label), is_error=True)

    # ── quick-query ───────────────────────────────────────

    def _quick_query(self, args: dict[str, Any]) -> ToolResult:
        mode = TaskMode.QUICK_ANSWER
        message = _require_message(args)
        budget = _budget(args, QUICK_BUDGET, "quick queries")
        attachments = parse_attachments(args.get("attachments"))
        timeout = _reply_timeout(args)
        assignment_timeout = _assignment_timeout(args)
        decision = parse_decision(_optional_str(args, "decision"))
        continue_task_id = _optional_str(args, "continueTaskId")

        project_id = self._project_id()
        resolution = self.resolver.resolve(
            project_id, continue_task_id, decision,
            mode=mode, message=message, max_budget_units=budget,
        )
        if resolution.needs_decision:
            return ToolResult(json.dumps(resolution.decision_request.to_dict(), indent=2))

        created = resolution.created_task
        if resolution.resume_task_id is None:
            created = self._create_task(message, mode, budget, project_id, assignment_timeout)
        task_id = created.task_id if created else resolution.resume_task_id
        self._upload(task_id, attachments, created)

        session = self.sessions.get_or_create(task_id, mode)
        with session.exclusive():
            # Poll sessions only exist while a call is waiting on them
            try:
                reply = PollReplyWaiter(self.tasks_api, task_id, interval=self.poll_interval).wait(timeout)
            except ReplyTimeoutError as exc:
                return self._timeout_result(task_id, mode, exc)
            finally:
                self.sessions.discard(session)

        lines = [reply.text or "The engineer finished the task without a written response."]
        meta = _meta_line(reply)
        if meta:
            lines.append(meta)
        if created and created.warning:
            lines.append(f"Warning: {created.warning}")
        advice = analyze_escalation(self.tasks_api, task_id, mode)
        if advice.should_escalate:
            lines.append(advice.hint())
        return ToolResult("\n\n".join(lines))

    # ── extended-chat ─────────────────────────────────────

    def _extended_chat(self, args: dict[str, Any]) -> ToolResult:
        mode = TaskMode.EXTENDED_CHAT
        message = _require_message(args)
        budget = _budget(args, CHAT_BUDGET, "chat sessions")
        attachments = parse_attachments(args.get("attachments"))
        assignment_timeout = _assignment_timeout(args)
        decision = parse_decision(_optional_str(args, "decision"))
        continue_task_id = _optional_str(args, "continueTaskId")
        previously_connected = bool(args.get("previouslyConnected", False))

        project_id = self._project_id()
        resolution = self.resolver.resolve(
            project_id, continue_task_id, decision,
            mode=mode, message=message, max_budget_units=budget,
        )
        if resolution.needs_decision:
            return ToolResult(json.dumps(resolution.decision_request.to_dict(), indent=2))

        created = resolution.created_task
        if resolution.resume_task_id is None:
            created = self._create_task(message, mode, budget, project_id, assignment_timeout)
        task_id = created.task_id if created else resolution.resume_task_id
        # New and follow-up tasks already carry the message; only a plain resume sends it over the channel
        send_over_channel = created is None and resolution.send_message
        self._upload(task_id, attachments, created)

        session = self.sessions.get_or_create(task_id, mode, previously_connected=previously_connected)
        with session.exclusive():
            transport = self._transport_for(session)
            try:
                if session.ended and not session.is_connected:
                    # The engineer ended the session between calls and the socket is already gone
                    reply = session.drain()
                else:
                    if not session.is_connected:
                        transport.connect()
                    if send_over_channel and not transport.send(message):
                        raise SessionConnectionError(f"Could not deliver the message to task {task_id}")
                    reply = PushReplyWaiter(session).wait(self.reply_timeout)
            except ReplyTimeoutError as exc:
                transport.disconnect("No reply before timeout")
                return self._timeout_result(task_id, mode, exc)
            except SessionConnectionError:
                transport.disconnect("Connection lost")
                raise

            lines = []
            if created:
                lines.append(f"Task #{task_id} started. Session: {self.tasks_api.session_url(task_id)}")
                if created.warning:
                    lines.append(f"Warning: {created.warning}")
            lines.append(reply.text or "(no new messages)")
            meta = _meta_line(reply)
            if meta:
                lines.append(meta)

            if reply.ended:
                transport.disconnect("Session ended by engineer")
                self.sessions.remove(task_id)
                lines.append(
                    f"The engineer ended session #{task_id} ({session.ended_by or 'engineer'}). "
                    "Do not call extended-chat again for this task; report the outcome to the user."
                )
                return ToolResult("\n\n".join(lines))

            if _COMPLETION_RE.search(_counterpart_text(reply)):
                lines.append(
                    "Hint: the engineer's message reads like the work is done. If they confirm, "
                    "the session will end; otherwise keep going."
                )
            if reply.closure_requested:
                lines.append("The engineer asked to close the session. Confirm with them in your next message.")
            lines.append(continuation_directive(task_id))
            return ToolResult("\n\n".join(lines))

    # ── listen ────────────────────────────────────────────

    def _listen(self, args: dict[str, Any]) -> ToolResult:
        session_id = _optional_str(args, "sessionId")
        verbose = bool(args.get("verbose", False))
        if session_id is None:
            return ToolResult(self._list_sessions(verbose))
        if not _TASK_ID_RE.fullmatch(session_id):
            raise ValidationError("sessionId must be a task id, e.g. 1234")

        session = self.sessions.get(session_id)
        lines = [
            f"Monitoring session: {session_id}",
            f"Session URL: {self.tasks_api.session_url(session_id)}",
        ]
        if session is None:
            lines.append("State: not open in this server")
        else:
            lines.append(f"State: {_describe_session(session)}")
            if session.ended:
                lines.append(f"Ended by: {session.ended_by or 'engineer'}")
        log = self.event_registry.get_or_create(session_id)
        lines.append("")
        lines.append("Recent activity:")
        lines.append(log.formatted_tail(LISTEN_TAIL_VERBOSE if verbose else LISTEN_TAIL))
        return ToolResult("\n".join(lines))

    def _list_sessions(self, verbose: bool) -> str:
        sessions = self.sessions.list()
        if not sessions:
            return (
                "No sessions are open in this server.\n\n"
                "Sessions start with extended-chat, or with quick-query while it waits for an answer. "
                f"Each task also has a page for the engineer at {self.tasks_api.session_url('<taskId>')}.\n"
                "Call listen with sessionId=<taskId> to see a task's recent activity."
            )
        lines = ["Open sessions:"]
        for session in sessions:
            lines.append(f"  #{session.task_id}: {_describe_session(session)}")
            if verbose:
                tail = self.event_registry.get_or_create(session.task_id).tail(3)
                lines.extend(f"      {event.format_line()}" for event in tail)
        return "\n".join(lines)

    # ── helpers ───────────────────────────────────────────

    def _project_id(self) -> str:
        if self.project_id:
            return self.project_id
        if self.projects_api is None:
            raise ConfigError("No project configured. Set FIXLINE_PROJECT_ID or run: fixline login")
        self.project_id = self.projects_api.get_or_create_default()
        logger.info("Using project %s", self.project_id)
        return self.project_id

    def _create_task(
        self,
        message: str,
        mode: TaskMode,
        budget: int,
        project_id: str,
        assignment_timeout: Optional[int],
    ) -> CreatedTask:
        created = self.tasks_api.create(
            message, mode, budget, project_id,
            assignment_timeout_seconds=assignment_timeout,
        )
        log_event(self.data_dir, "task.created", {
            "task_id": created.task_id,
            "mode": mode.value,
            "max_budget_units": budget,
            "project_id": project_id,
        })
        return created

    def _upload(self, task_id: str, attachments: list[Attachment], created: Optional[CreatedTask]) -> None:
        if not attachments:
            return
        try:
            upload_attachments(self.tasks_api, task_id, attachments)
        except UpstreamError as exc:
            logger.error("Attachment upload to task %s failed: %s", task_id, exc)
            if created is not None:
                self._cancel_quietly(task_id)
            raise UpstreamError(
                f"Failed to upload attachments: {exc.message}",
                status_code=exc.status_code,
                details=exc.details,
            ) from exc

    def _cancel_quietly(self, task_id: str) -> None:
        try:
            self.tasks_api.cancel(task_id)
            log_event(self.data_dir, "task.cancelled", {"task_id": task_id, "reason": "attachment upload failed"})
        except UpstreamError as exc:
            logger.warning("Could not cancel task %s after failed upload: %s", task_id, exc)

    def _transport_for(self, session: Session) -> SessionTransport:
        if session.transport is not None:
            return session.transport
        return SessionTransport(
            session,
            build_ws_url(self.ws_base, session.task_id),
            self.token_provider,
            connector=self.connector,
            handshake_timeout=self.handshake_timeout,
            disconnect_grace=self.disconnect_grace,
            event_log=self.event_registry.get_or_create(session.task_id),
        )

    def _timeout_result(self, task_id: str, mode: TaskMode, exc: ReplyTimeoutError) -> ToolResult:
        waited = f"{exc.timeout:g}s" if exc.timeout is not None else "the timeout"
        lines = [f"Error: No reply from the engineer on task #{task_id} after {waited}."]
        partial = exc.partial
        if isinstance(partial, Reply) and partial.text:
            lines.append(f"Received so far:\n{partial.text}")
        lines.append(f'To keep waiting, call {mode.label} again with continueTaskId="{task_id}".')
        return ToolResult("\n\n".join(lines), is_error=True)
