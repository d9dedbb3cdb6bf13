"""Error taxonomy shared by the REST client, the session layer and the tools.

Every error a tool call can hit derives from :class:`FixlineError` so the
tool façade can turn it into a short, readable message for the agent.
"""
from __future__ import annotations

from typing import Any, Optional


class FixlineError(Exception):
    """Base class for all fixline errors."""


class ConfigError(FixlineError):
    """Credentials or settings file is missing or unreadable."""


class ValidationError(FixlineError):
    """Tool arguments were rejected before any network call."""


class SessionBusyError(ValidationError):
    """A second call arrived for a session that is already waiting."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(
            f"Task {task_id} already has a call waiting for a reply. "
            "Wait for it to finish before calling again."
        )


class ReplyTimeoutError(FixlineError, TimeoutError):
    """No reply arrived before the deadline."""

    def __init__(
        self,
        message: str = "Timed out waiting for the engineer's reply",
        timeout: float | None = None,
        partial: Any = None,
    ) -> None:
        self.timeout = timeout
        # Reply with whatever arrived before the deadline, when there is one
        self.partial = partial
        super().__init__(message)


class SessionConnectionError(FixlineError, ConnectionError):
    """The duplex channel could not be opened or dropped mid-wait."""


class UpstreamError(FixlineError):
    """The backend REST API returned a failure."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class AuthenticationError(UpstreamError):
    """Token missing, expired beyond refresh, or rejected by the backend."""


class InsufficientCreditsError(UpstreamError):
    def __init__(self, required: int, pricing_url: str) -> None:
        self.required = required
        self.pricing_url = pricing_url
        super().__init__(
            f"Insufficient credits for a budget of {required}. Add credits: {pricing_url}",
            status_code=402,
        )
