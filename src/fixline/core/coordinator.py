"""Wait for the counterpart's next reply.

Two strategies share one interface: :class:`PushReplyWaiter` for chat
sessions fed by the duplex channel, :class:`PollReplyWaiter` for quick
queries that only have the status endpoint.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from fixline.core.errors import AuthenticationError, ReplyTimeoutError, UpstreamError
from fixline.core.models import Message, Reply, Sender, TaskMode
from fixline.core.sessions import Session
from fixline.integrations.tasks_api import TasksApi

logger = logging.getLogger("fixline.coordinator")


class ReplyWaiter:
    def wait(self, timeout: float) -> Reply:
        raise NotImplementedError


class PushReplyWaiter(ReplyWaiter):
    def __init__(self, session: Session) -> None:
        self.session = session

    def wait(self, timeout: float) -> Reply:
        session = self.session
        pending = session.register_pending()
        logger.debug("Waiting up to %ss for a reply on task %s", timeout, session.task_id)
        if not pending.wait(timeout):
            if session.clear_pending(pending):
                logger.info("No reply on task %s after %ss", session.task_id, timeout)
                raise ReplyTimeoutError(timeout=timeout)
            # settled between the timeout and the clear
        return pending.result()


class PollReplyWaiter(ReplyWaiter):
    """Poll the status endpoint until the task is terminal or the deadline passes.

    A timeout raises :class:`ReplyTimeoutError` with the messages seen so far
    attached as ``partial``.
    """

    def __init__(
        self,
        tasks_api: TasksApi,
        task_id: str,
        interval: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.tasks_api = tasks_api
        self.task_id = task_id
        self.interval = interval
        self._clock = clock
        self._sleep = sleep

    def wait(self, timeout: float) -> Reply:
        start = self._clock()
        deadline = start + timeout
        seen: set[str] = set()
        messages: list[Message] = []
        credits: Optional[int] = None
        response: Optional[str] = None

        while True:
            try:
                status = self.tasks_api.get_status(self.task_id)
            except AuthenticationError:
                raise
            except UpstreamError as exc:
                logger.warning("Status poll for task %s failed, retrying: %s", self.task_id, exc)
                status = None

            if status is not None:
                for item in status.messages:
                    if item.sender is not Sender.COUNTERPART or item.dedup_key in seen:
                        continue
                    seen.add(item.dedup_key)
                    messages.append(Message(sender=item.sender, content=item.content, timestamp=item.timestamp))
                if status.credits_used is not None:
                    credits = status.credits_used
                if status.response:
                    response = status.response
                if status.is_terminal:
                    logger.info("Task %s reached status %s", self.task_id, status.status)
                    return self._reply(messages, response, credits, start, ended=True)

            if self._clock() >= deadline:
                break
            self._sleep(min(self.interval, max(0.0, deadline - self._clock())))

        logger.info("Task %s not finished after %ss", self.task_id, timeout)
        raise ReplyTimeoutError(
            timeout=timeout,
            partial=self._reply(messages, response, credits, start, ended=False),
        )

    def _reply(
        self,
        messages: list[Message],
        response: Optional[str],
        credits: Optional[int],
        start: float,
        ended: bool,
    ) -> Reply:
        if messages:
            text = "\n".join(m.format_line() for m in messages)
        else:
            text = response or ""
        return Reply(
            text=text,
            messages=messages,
            credits_used=credits,
            duration_seconds=int(self._clock() - start),
            ended=ended,
        )


def waiter_for(
    mode: TaskMode,
    *,
    session: Optional[Session] = None,
    tasks_api: Optional[TasksApi] = None,
    task_id: Optional[str] = None,
    interval: float = 3.0,
) -> ReplyWaiter:
    if mode is TaskMode.EXTENDED_CHAT:
        if session is None:
            raise ValueError("extended-chat replies need a session")
        return PushReplyWaiter(session)
    if tasks_api is None or task_id is None:
        raise ValueError("quick-query replies need the tasks API and a task id")
    return PollReplyWaiter(tasks_api, task_id, interval=interval)
