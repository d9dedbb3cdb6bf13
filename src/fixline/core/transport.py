"""Duplex session channel for one task.

Wire format (both directions) is a JSON object per websocket message::

    {"type": "engineer_message", "payload": {...}, "timestamp": "..."}

A daemon reader thread parses each inbound frame into a :class:`Frame`
and dispatches it through a table that covers every :class:`FrameKind`.
Dispatch never blocks: message frames are buffered on the
:class:`~fixline.core.sessions.Session`, control frames update its state,
and either may settle the session's pending wait.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect as ws_connect

from fixline.core.errors import SessionConnectionError
from fixline.core.models import Message, MessageKind, Sender
from fixline.core.sessions import Session, SessionState
from fixline.core.task_events import TaskEventLog

logger = logging.getLogger("fixline.transport")

ACK_TEXT = "Message received. Working on it."
DEFAULT_GREETING = (
    "Hi, I'm the AI coding agent working on this task. I'll relay your "
    "instructions, run them, and report back with the results."
)


class FrameKind(str, Enum):
    CONNECTED = "connected"
    CUSTOMER_MESSAGE = "customer_message"
    ENGINEER_MESSAGE = "engineer_message"
    COUNTERPART_MESSAGE = "counterpart_message"
    AI_ASSISTANT_MESSAGE = "ai_assistant_message"
    BILLING_UPDATE = "billing_update"
    CLOSURE_REQUEST = "closure_request"
    SESSION_END = "session_end"
    REQUEST_COMMAND = "request_command"
    COMMAND_OUTPUT = "command_output"
    CUSTOMER_CONNECTED = "customer_connected"
    ENGINEER_CONNECTED = "engineer_connected"
    AI_ASSISTANT_CONNECTED = "ai_assistant_connected"
    DISCONNECTED = "disconnected"


class OutboundKind(str, Enum):
    CUSTOMER_MESSAGE = "customer_message"
    AI_ASSISTANT_MESSAGE = "ai_assistant_message"
    END_SESSION = "end_session"


@dataclass
class Frame:
    kind: FrameKind
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""


def parse_frame(raw: str | bytes) -> Optional[Frame]:
    """Parse one inbound websocket message; returns None for anything unusable."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning("Dropping unparseable frame: %s", exc)
        return None
    if not isinstance(data, dict):
        logger.warning("Dropping non-object frame")
        return None
    frame_type = data.get("type") or data.get("kind")
    try:
        kind = FrameKind(frame_type)
    except ValueError:
        logger.warning("Dropping frame of unknown type %r", frame_type)
        return None
    payload = data.get("payload")
    return Frame(
        kind=kind,
        payload=payload if isinstance(payload, dict) else {},
        timestamp=str(data.get("timestamp") or time.strftime("%Y-%m-%dT%H:%M:%S")),
    )


def _payload_text(payload: Dict[str, Any]) -> str:
    for key in ("content", "message", "text"):
        value = payload.get(key)
        if value:
            return str(value)
    return ""


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric billing value %r", value)
        return None


def _message_kind(payload: Dict[str, Any]) -> MessageKind:
    metadata = payload.get("metadata") or {}
    if isinstance(metadata, dict) and metadata.get("type") == "template_command":
        return MessageKind.TEMPLATE_COMMAND
    return MessageKind.TEXT


_MESSAGE_SENDERS = {
    FrameKind.CUSTOMER_MESSAGE: Sender.CUSTOMER,
    FrameKind.ENGINEER_MESSAGE: Sender.COUNTERPART,
    FrameKind.COUNTERPART_MESSAGE: Sender.COUNTERPART,
    FrameKind.AI_ASSISTANT_MESSAGE: Sender.AGENT,
}

_JOINED_ROLES = {
    FrameKind.CUSTOMER_CONNECTED: "The customer",
    FrameKind.ENGINEER_CONNECTED: "The engineer",
    FrameKind.AI_ASSISTANT_CONNECTED: "Another AI assistant",
}


def build_ws_url(ws_base: str, task_id: str) -> str:
    query = urlencode({"taskId": task_id, "userType": "ai-assistant"})
    return f"{ws_base.rstrip('/')}/ws?{query}"


def default_connector(url: str, token: str, open_timeout: float) -> Any:
    return ws_connect(
        url,
        additional_headers={"Authorization": f"Bearer {token}"},
        open_timeout=open_timeout,
    )


class SessionTransport:
    """Owns the single websocket of a session.

    ``connector(url, token, open_timeout)`` returns an object with ``send``,
    ``close`` and blocking iteration over inbound messages (the websockets
    sync client connection by default).
    """

    def __init__(
        self,
        session: Session,
        url: str,
        token_provider: Callable[[], str],
        *,
        connector: Callable[[str, str, float], Any] = default_connector,
        handshake_timeout: float = 15.0,
        disconnect_grace: float = 0.5,
        greeting: Optional[str] = DEFAULT_GREETING,
        event_log: Optional[TaskEventLog] = None,
    ) -> None:
        self.session = session
        self.url = url
        self._token_provider = token_provider
        self._connector = connector
        self.handshake_timeout = handshake_timeout
        self.disconnect_grace = disconnect_grace
        self.greeting = greeting
        self.event_log = event_log
        self._ws: Any = None
        self._reader: Optional[threading.Thread] = None
        self._handshake_done = threading.Event()
        self._send_lock = threading.Lock()
        self._handlers: Dict[FrameKind, Callable[[Frame], None]] = {
            FrameKind.CONNECTED: self._on_connected,
            FrameKind.CUSTOMER_MESSAGE: self._on_message,
            FrameKind.ENGINEER_MESSAGE: self._on_message,
            FrameKind.COUNTERPART_MESSAGE: self._on_message,
            FrameKind.AI_ASSISTANT_MESSAGE: self._on_message,
            FrameKind.BILLING_UPDATE: self._on_billing_update,
            FrameKind.CLOSURE_REQUEST: self._on_closure_request,
            FrameKind.SESSION_END: self._on_session_end,
            FrameKind.REQUEST_COMMAND: self._on_command_request,
            FrameKind.COMMAND_OUTPUT: self._on_command_output,
            FrameKind.CUSTOMER_CONNECTED: self._on_participant_joined,
            FrameKind.ENGINEER_CONNECTED: self._on_participant_joined,
            FrameKind.AI_ASSISTANT_CONNECTED: self._on_participant_joined,
            FrameKind.DISCONNECTED: self._on_remote_disconnect,
        }
        session.transport = self

    @property
    def handled_kinds(self) -> frozenset[FrameKind]:
        return frozenset(self._handlers)

    # ── lifecycle ─────────────────────────────────────────

    def connect(self) -> None:
        """Open the channel; returns once the server's ``connected`` frame arrives."""
        session = self.session
        with session.lock:
            if session.state is SessionState.CONNECTED:
                return
            session.transition(SessionState.CONNECTING)
            self._handshake_done.clear()

        logger.info("Connecting session for task %s", session.task_id)
        try:
            token = self._token_provider()
            ws = self._connector(self.url, token, self.handshake_timeout)
        except Exception as exc:  # noqa: BLE001
            with session.lock:
                session.transition(SessionState.DISCONNECTED)
            logger.error("Session connect failed for task %s: %s", session.task_id, exc)
            raise SessionConnectionError(f"Could not open a session for task {session.task_id}: {exc}") from exc

        self._ws = ws
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(ws,),
            daemon=True,
            name=f"session-reader-{session.task_id}",
        )
        self._reader.start()

        if self._handshake_done.wait(self.handshake_timeout) and session.state is SessionState.CONNECTED:
            logger.info("Session connected for task %s", session.task_id)
            return

        logger.error("Session handshake failed for task %s", session.task_id)
        self._ws = None
        self._close_socket(ws)
        with session.lock:
            if session.state is not SessionState.DISCONNECTED:
                session.transition(SessionState.DISCONNECTED)
        raise SessionConnectionError(
            f"Session for task {session.task_id} did not acknowledge the connection "
            f"within {self.handshake_timeout:g}s"
        )

    def disconnect(self, reason: Optional[str] = None) -> None:
        """Tear the channel down. Safe to call any number of times."""
        session = self.session
        with session.lock:
            ws = self._ws
            was_connected = session.state is SessionState.CONNECTED
            if was_connected:
                session.transition(SessionState.CLOSING)

        if was_connected and ws is not None:
            payload = {"endedBy": "ai-assistant", "reason": reason or "Disconnected by AI assistant"}
            if self._write(ws, OutboundKind.END_SESSION.value, payload):
                time.sleep(self.disconnect_grace)

        self._ws = None
        if ws is not None:
            self._close_socket(ws)
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)

        with session.lock:
            if session.state is not SessionState.DISCONNECTED:
                session.transition(SessionState.DISCONNECTED)
            session.reset()
        logger.info("Session for task %s disconnected (reason=%s)", session.task_id, reason)

    def _close_socket(self, ws: Any) -> None:
        try:
            ws.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Error closing socket for task %s: %s", self.session.task_id, exc)

    def _read_loop(self, ws: Any) -> None:
        try:
            for raw in ws:
                frame = parse_frame(raw)
                if frame is not None:
                    self.dispatch(frame)
        except ConnectionClosed as exc:
            logger.info("Session socket closed for task %s: %s", self.session.task_id, exc)
        except Exception:  # noqa: BLE001
            logger.exception("Session reader failed for task %s", self.session.task_id)
        finally:
            self._on_socket_closed(ws)

    def _on_socket_closed(self, ws: Any) -> None:
        if ws is not self._ws:
            return  # closed on purpose by connect() or disconnect()
        self._ws = None
        self._close_socket(ws)
        self._mark_dropped("connection closed")

    def _mark_dropped(self, why: str) -> None:
        session = self.session
        with session.lock:
            if session.state is not SessionState.DISCONNECTED:
                session.transition(SessionState.DISCONNECTED)
            session.reject_pending(SessionConnectionError(f"Session for task {session.task_id} dropped: {why}"))
        self._handshake_done.set()
        logger.warning("Session for task %s dropped: %s", session.task_id, why)

    # ── outbound ──────────────────────────────────────────

    def send(self, content: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Send an agent message. Returns False (and logs) instead of raising."""
        return self.send_frame(
            OutboundKind.AI_ASSISTANT_MESSAGE,
            {"content": content, "metadata": metadata or {}},
        )

    def send_frame(self, kind: OutboundKind, payload: Dict[str, Any]) -> bool:
        with self.session.lock:
            connected = self.session.state is SessionState.CONNECTED
            ws = self._ws
        if not connected or ws is None:
            logger.warning("Not sending %s for task %s: session not connected", kind.value, self.session.task_id)
            if self.event_log:
                self.event_log.append("out", kind.value, payload, ok=False)
            return False
        return self._write(ws, kind.value, payload)

    def _write(self, ws: Any, frame_type: str, payload: Dict[str, Any]) -> bool:
        data = json.dumps({
            "type": frame_type,
            "payload": payload,
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
        })
        try:
            with self._send_lock:
                ws.send(data)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Send of %s failed for task %s: %s", frame_type, self.session.task_id, exc)
            if self.event_log:
                self.event_log.append("out", frame_type, payload, ok=False)
            return False
        if self.event_log:
            self.event_log.append("out", frame_type, payload)
        return True

    # ── inbound dispatch ──────────────────────────────────

    def dispatch(self, frame: Frame) -> None:
        if self.event_log:
            self.event_log.append("in", frame.kind.value, frame.payload)
        try:
            self._handlers[frame.kind](frame)
        except Exception:  # noqa: BLE001
            # A malformed frame is dropped; the session keeps reading
            logger.exception("Dropping bad %s frame for task %s", frame.kind.value, self.session.task_id)

    def _buffer(self, message: Message) -> None:
        """Buffer a message; a counterpart message settles the pending wait, then is acknowledged."""
        session = self.session
        resolved = False
        with session.lock:
            session.record(message)
            if message.sender is Sender.COUNTERPART and session.pending is not None:
                resolved = session.resolve_pending()
        if resolved:
            self.send(ACK_TEXT, {"type": "ack"})

    def _on_connected(self, frame: Frame) -> None:
        session = self.session
        greet = False
        with session.lock:
            if session.state is SessionState.CONNECTING:
                session.transition(SessionState.CONNECTED)
            if not session.has_greeted:
                session.has_greeted = True
                greet = self.greeting is not None
        self._handshake_done.set()
        if greet:
            self.send(self.greeting or "", {"type": "greeting"})

    def _on_message(self, frame: Frame) -> None:
        text = _payload_text(frame.payload)
        if not text:
            logger.debug("Ignoring empty %s frame", frame.kind.value)
            return
        self._buffer(Message(
            sender=_MESSAGE_SENDERS[frame.kind],
            content=text,
            timestamp=frame.timestamp,
            kind=_message_kind(frame.payload),
        ))

    def _on_command_request(self, frame: Frame) -> None:
        command = frame.payload.get("command", "")
        reason = frame.payload.get("reason")
        content = f"Please run: {command}"
        if reason:
            content += f" (reason: {reason})"
        self._buffer(Message(
            sender=Sender.COUNTERPART,
            content=content,
            timestamp=frame.timestamp,
            kind=MessageKind.COMMAND_REQUEST,
        ))

    def _on_command_output(self, frame: Frame) -> None:
        p = frame.payload
        parts = [f"exit code {p.get('exitCode', '?')}"]
        if p.get("stdout"):
            parts.append(f"stdout:\n{p['stdout']}")
        if p.get("stderr"):
            parts.append(f"stderr:\n{p['stderr']}")
        self._buffer(Message(
            sender=Sender.from_wire(p.get("sender", "system")),
            content="\n".join(parts),
            timestamp=frame.timestamp,
            kind=MessageKind.COMMAND_OUTPUT,
        ))

    def _on_billing_update(self, frame: Frame) -> None:
        with self.session.lock:
            units = _as_int(frame.payload.get("unitsUsed"))
            if units is not None:
                self.session.units_used = units
            duration = _as_int(frame.payload.get("durationSeconds"))
            if duration is not None:
                self.session.duration_seconds = duration

    def _on_participant_joined(self, frame: Frame) -> None:
        self.session.record(Message(
            sender=Sender.SYSTEM,
            content=f"{_JOINED_ROLES[frame.kind]} joined the session",
            timestamp=frame.timestamp,
        ))

    def _on_closure_request(self, frame: Frame) -> None:
        reason = frame.payload.get("reason")
        content = "The engineer asked to close the session"
        if reason:
            content += f": {reason}"
        with self.session.lock:
            self.session.closure_requested = True
            self.session.record(Message(sender=Sender.SYSTEM, content=content, timestamp=frame.timestamp))
            self.session.resolve_pending()

    def _on_session_end(self, frame: Frame) -> None:
        ended_by = str(frame.payload.get("endedBy") or "engineer")
        summary = frame.payload.get("summary")
        content = f"Session ended by {ended_by}"
        if summary:
            content += f". Summary: {summary}"
        with self.session.lock:
            self.session.ended = True
            self.session.ended_by = ended_by
            self.session.record(Message(sender=Sender.SYSTEM, content=content, timestamp=frame.timestamp))
            self.session.resolve_pending()

    def _on_remote_disconnect(self, frame: Frame) -> None:
        ws = self._ws
        self._ws = None
        self._mark_dropped(str(frame.payload.get("reason") or "server reported disconnect"))
        if ws is not None:
            self._close_socket(ws)
