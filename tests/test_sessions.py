from __future__ import annotations

import time

import pytest

from fixline.core.errors import SessionBusyError, SessionConnectionError
from fixline.core.models import Message, Sender, TaskMode
from fixline.core.sessions import Session, SessionRegistry, SessionState


def _session(**kwargs) -> Session:
    session = Session(task_id="7", mode=TaskMode.EXTENDED_CHAT, **kwargs)
    return session


def test_state_machine_rejects_illegal_transition() -> None:
    session = _session()
    with pytest.raises(RuntimeError):
        session.transition(SessionState.CONNECTED)
    session.transition(SessionState.CONNECTING)
    session.transition(SessionState.CONNECTED)
    session.transition(SessionState.CLOSING)
    with pytest.raises(RuntimeError):
        session.transition(SessionState.CONNECTED)
    session.transition(SessionState.DISCONNECTED)


def test_exclusive_rejects_concurrent_call() -> None:
    session = _session()
    with session.exclusive():
        with pytest.raises(SessionBusyError):
            with session.exclusive():
                pass
    with session.exclusive():
        pass


def test_register_pending_requires_connection() -> None:
    session = _session()
    with pytest.raises(SessionConnectionError):
        session.register_pending()


def test_second_pending_is_rejected() -> None:
    session = _session(state=SessionState.CONNECTED)
    session.register_pending()
    with pytest.raises(SessionBusyError):
        session.register_pending()


def test_buffered_counterpart_message_resolves_immediately() -> None:
    session = _session(state=SessionState.CONNECTED)
    session.record(Message(Sender.CUSTOMER, "status?"))
    pending = session.register_pending()
    assert not pending.done

    session = _session(state=SessionState.CONNECTED)
    session.record(Message(Sender.COUNTERPART, "done"))
    pending = session.register_pending()
    assert pending.done
    assert pending.result().text == "[counterpart]: done"
    assert session.pending is None


def test_drain_preserves_arrival_order() -> None:
    session = _session(units_used=4)
    session.record(Message(Sender.SYSTEM, "The engineer joined the session"))
    session.record(Message(Sender.CUSTOMER, "hi"))
    session.record(Message(Sender.COUNTERPART, "hello"))
    reply = session.drain()
    assert reply.text.splitlines() == [
        "[system]: The engineer joined the session",
        "[customer]: hi",
        "[counterpart]: hello",
    ]
    assert reply.credits_used == 4
    assert session.buffer == []


def test_reset_rejects_pending_and_clears_state() -> None:
    session = _session(state=SessionState.CONNECTED, has_greeted=True)
    pending = session.register_pending()
    session.record(Message(Sender.CUSTOMER, "x"))
    session.reset()
    with pytest.raises(SessionConnectionError):
        pending.result()
    assert session.buffer == []
    assert session.has_greeted is False


def test_registry_get_or_create() -> None:
    registry = SessionRegistry()
    first = registry.get_or_create("1", TaskMode.EXTENDED_CHAT)
    assert first.has_greeted is False
    again = registry.get_or_create("1", TaskMode.EXTENDED_CHAT, previously_connected=True)
    assert again is first
    assert first.has_greeted is True
    assert registry.remove("1") is first
    assert registry.get("1") is None


def test_registry_discard_only_removes_same_session() -> None:
    registry = SessionRegistry()
    old = registry.get_or_create("1", TaskMode.QUICK_ANSWER)
    registry.remove("1")
    current = registry.get_or_create("1", TaskMode.QUICK_ANSWER)
    registry.discard(old)
    assert registry.get("1") is current
    registry.discard(current)
    assert registry.get("1") is None


class _SlowTransport:
    def __init__(self, session: Session, delay: float) -> None:
        self.session = session
        self.delay = delay
        self.reasons: list = []
        session.transport = self

    def disconnect(self, reason=None) -> None:
        time.sleep(self.delay)
        self.reasons.append(reason)
        self.session.state = SessionState.DISCONNECTED


def test_close_all_disconnects_in_parallel_within_grace() -> None:
    registry = SessionRegistry()
    transports = []
    for task_id in ("1", "2", "3"):
        session = registry.get_or_create(task_id, TaskMode.EXTENDED_CHAT)
        session.state = SessionState.CONNECTED
        transports.append(_SlowTransport(session, 0.2))
    idle = registry.get_or_create("4", TaskMode.QUICK_ANSWER)

    start = time.monotonic()
    registry.close_all(grace=2.0, reason="bye")
    elapsed = time.monotonic() - start

    assert elapsed < 0.6
    assert all(t.reasons == ["bye"] for t in transports)
    assert idle.transport is None


def test_close_all_stops_waiting_after_grace() -> None:
    registry = SessionRegistry()
    session = registry.get_or_create("1", TaskMode.EXTENDED_CHAT)
    session.state = SessionState.CONNECTED
    _SlowTransport(session, 1.0)

    start = time.monotonic()
    registry.close_all(grace=0.1)
    assert time.monotonic() - start < 0.5


def test_summary_lists_sessions() -> None:
    registry = SessionRegistry()
    registry.get_or_create("9", TaskMode.QUICK_ANSWER)
    assert registry.summary() == [{
        "task_id": "9",
        "mode": "quick-query",
        "state": "disconnected",
        "buffered": 0,
        "waiting": False,
        "units_used": None,
        "ended": False,
    }]
