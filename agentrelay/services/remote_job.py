from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    NEEDS_CAPABILITY = "needs_capability"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATUSES


FAILURE_STATUSES = frozenset({RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.EXPIRED})
TERMINAL_STATUSES = FAILURE_STATUSES | {RunStatus.COMPLETED}


@dataclass(frozen=True)
class CapabilityInvocation:
    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RemoteJob:
    """One snapshot of the reasoning engine's run for a turn."""

    job_id: str
    thread_id: str
    status: RunStatus
    pending_invocations: tuple[CapabilityInvocation, ...] = ()
    last_error: str | None = None
