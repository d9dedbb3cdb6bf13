"""Client-side sessions: one per task while a tool call is working on it.

A :class:`Session` holds everything the transport and the reply waiters
share: the connection state, the message buffer and the single
pending wait. All of it is guarded by ``Session.lock``. Sessions live in a
:class:`SessionRegistry` owned by the protocol handler and keyed by task id.
"""
from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

from fixline.core.errors import SessionBusyError, SessionConnectionError
from fixline.core.models import Message, Reply, Sender, TaskMode

if TYPE_CHECKING:
    from fixline.core.transport import SessionTransport

logger = logging.getLogger("fixline.sessions")


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


_TRANSITIONS = {
    SessionState.DISCONNECTED: {SessionState.CONNECTING},
    SessionState.CONNECTING: {SessionState.CONNECTED, SessionState.DISCONNECTED},
    SessionState.CONNECTED: {SessionState.CLOSING, SessionState.DISCONNECTED},
    SessionState.CLOSING: {SessionState.DISCONNECTED},
}


class PendingReply:
    """One outstanding wait. Settled exactly once, by resolve or reject."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reply: Optional[Reply] = None
        self._error: Optional[BaseException] = None

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def resolve(self, reply: Reply) -> bool:
        if self._event.is_set():
            return False
        self._reply = reply
        self._event.set()
        return True

    def reject(self, error: BaseException) -> bool:
        if self._event.is_set():
            return False
        self._error = error
        self._event.set()
        return True

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def result(self) -> Reply:
        if self._error is not None:
            raise self._error
        assert self._reply is not None
        return self._reply


@dataclass
class Session:
    task_id: str
    mode: TaskMode
    has_greeted: bool = False
    state: SessionState = SessionState.DISCONNECTED
    buffer: List[Message] = field(default_factory=list)
    pending: Optional[PendingReply] = None
    units_used: Optional[int] = None
    duration_seconds: Optional[int] = None
    ended: bool = False
    ended_by: str = ""
    closure_requested: bool = False
    transport: Optional["SessionTransport"] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _call_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # ── state machine ─────────────────────────────────────

    def transition(self, new_state: SessionState) -> None:
        with self.lock:
            if new_state not in _TRANSITIONS[self.state]:
                raise RuntimeError(f"Illegal session transition {self.state.value} -> {new_state.value}")
            logger.debug("Session %s: %s -> %s", self.task_id, self.state.value, new_state.value)
            self.state = new_state

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    # ── call serialization ────────────────────────────────

    @contextlib.contextmanager
    def exclusive(self) -> Iterator["Session"]:
        """Hold the session for one tool call; a concurrent call is rejected."""
        if not self._call_lock.acquire(blocking=False):
            raise SessionBusyError(self.task_id)
        try:
            yield self
        finally:
            self._call_lock.release()

    # ── buffer and pending wait ───────────────────────────

    def record(self, message: Message) -> None:
        with self.lock:
            self.buffer.append(message)

    def has_counterpart_message(self) -> bool:
        with self.lock:
            return any(m.sender is Sender.COUNTERPART for m in self.buffer)

    def drain(self) -> Reply:
        """Turn the buffer into a reply and clear it."""
        with self.lock:
            messages = list(self.buffer)
            self.buffer.clear()
            reply = Reply(
                text="\n".join(m.format_line() for m in messages),
                messages=messages,
                credits_used=self.units_used,
                duration_seconds=self.duration_seconds,
                ended=self.ended,
                closure_requested=self.closure_requested,
            )
            self.closure_requested = False
            return reply

    def register_pending(self) -> PendingReply:
        with self.lock:
            if self.pending is not None and not self.pending.done:
                raise SessionBusyError(self.task_id)
            if not self.is_connected:
                raise SessionConnectionError(f"Session for task {self.task_id} is not connected")
            pending = PendingReply()
            self.pending = pending
            if self.has_counterpart_message() or self.ended or self.closure_requested:
                self.resolve_pending()
            return pending

    def resolve_pending(self) -> bool:
        """Resolve the pending wait with the drained buffer."""
        with self.lock:
            pending = self.pending
            if pending is None or pending.done:
                return False
            self.pending = None
            return pending.resolve(self.drain())

    def reject_pending(self, error: BaseException) -> bool:
        with self.lock:
            pending = self.pending
            self.pending = None
            if pending is None:
                return False
            return pending.reject(error)

    def clear_pending(self, pending: PendingReply) -> bool:
        """Drop ``pending`` if it is still the registered wait and unsettled."""
        with self.lock:
            if pending.done:
                return False
            if self.pending is pending:
                self.pending = None
            return True

    def reset(self) -> None:
        """Clear everything a connection accumulated. Rejects a waiter still pending."""
        with self.lock:
            self.reject_pending(SessionConnectionError(f"Session for task {self.task_id} was disconnected"))
            self.buffer.clear()
            self.has_greeted = False
            self.closure_requested = False


class SessionRegistry:
    """Arena of sessions keyed by task id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, task_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(task_id)

    def get_or_create(self, task_id: str, mode: TaskMode, previously_connected: bool = False) -> Session:
        with self._lock:
            session = self._sessions.get(task_id)
            if session is None:
                session = Session(task_id=task_id, mode=mode, has_greeted=previously_connected)
                self._sessions[task_id] = session
                logger.info("Session registered: task=%s mode=%s", task_id, mode.value)
            elif previously_connected:
                session.has_greeted = True
            return session

    def remove(self, task_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(task_id, None)

    def discard(self, session: Session) -> None:
        """Remove ``session`` unless its task id has since been given a new session."""
        with self._lock:
            if self._sessions.get(session.task_id) is session:
                del self._sessions[session.task_id]

    def list(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def summary(self) -> list[dict]:
        return [
            {
                "task_id": s.task_id,
                "mode": s.mode.label,
                "state": s.state.value,
                "buffered": len(s.buffer),
                "waiting": s.pending is not None,
                "units_used": s.units_used,
                "ended": s.ended,
            }
            for s in self.list()
        ]

    def close_all(self, grace: float = 2.0, reason: str = "Client shutting down") -> None:
        """Disconnect every open session in parallel, bounded by ``grace`` seconds overall."""
        open_sessions = [s for s in self.list() if s.transport is not None and s.state is not SessionState.DISCONNECTED]
        if not open_sessions:
            return
        logger.info("Closing %d open session(s)", len(open_sessions))
        threads = []
        for session in open_sessions:
            t = threading.Thread(
                target=self._close_one,
                args=(session, reason),
                daemon=True,
                name=f"session-close-{session.task_id}",
            )
            t.start()
            threads.append(t)
        deadline = time.monotonic() + grace
        for t in threads:
            t.join(max(0.0, deadline - time.monotonic()))
        stragglers = [t.name for t in threads if t.is_alive()]
        if stragglers:
            logger.warning("Shutdown grace elapsed with sessions still closing: %s", ", ".join(stragglers))

    @staticmethod
    def _close_one(session: Session, reason: str) -> None:
        try:
            if session.transport is not None:
                session.transport.disconnect(reason)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to close session %s: %s", session.task_id, exc)
