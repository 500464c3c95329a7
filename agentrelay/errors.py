from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentrelay.services.remote_job import RunStatus


class ValidationError(ValueError):
    """Malformed gateway request, rejected before anything is submitted."""


class NotFoundError(ValidationError):
    pass


class CapabilityError(RuntimeError):
    """A named capability invocation failed.

    Never escapes the registry: it is converted into a failed
    CapabilityResult and reported back to the reasoning engine.
    """

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class CapabilityValidationError(CapabilityError):
    def __init__(self, message: str) -> None:
        super().__init__(message, user_message=message)


class CapabilityProviderError(CapabilityError):
    pass


class RemoteEngineError(RuntimeError):
    """Transport-level failure talking to the reasoning engine."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteJobError(RuntimeError):
    """The remote job ended in a failure state, or never finished in time."""

    user_message = "The assistant could not finish this reply. Please try again."

    def __init__(
        self,
        message: str,
        *,
        status: RunStatus | None = None,
        timed_out: bool = False,
        job_id: str | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.timed_out = timed_out
        self.job_id = job_id
        self.attempts = attempts
        if timed_out:
            self.user_message = "The assistant took too long to reply. Please try again."


class PersistenceError(RuntimeError):
    """A conversation store read or write failed.

    Writes made during a turn are best-effort and only logged.
    """
