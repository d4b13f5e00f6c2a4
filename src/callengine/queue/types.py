"""
Queue job kinds, options and payload schemas.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from callengine.config import Settings, get_settings


class JobKind(str, Enum):
    SCHEDULE_TICK = "schedule-tick"
    PROCESS_USER_CALL = "process-user-call"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class QueueError(Exception):
    """Raised when the queue cannot accept or track a job."""


@dataclass(frozen=True)
class JobOptions:
    """Per-job retry / retention options.

    remove_on_complete / remove_on_fail are the number of finished jobs of
    that outcome kept for inspection; older ones are deleted.
    """

    attempts: int = 3
    backoff_type: BackoffType = BackoffType.EXPONENTIAL
    backoff_delay_ms: int = 2000
    delay_ms: int = 0
    remove_on_complete: int = 100
    remove_on_fail: int = 500

    @classmethod
    def defaults(cls, settings: Settings | None = None) -> "JobOptions":
        s = settings or get_settings()
        return cls(
            attempts=s.queue_job_attempts,
            backoff_type=BackoffType.EXPONENTIAL,
            backoff_delay_ms=s.queue_backoff_delay_ms,
            remove_on_complete=s.queue_remove_on_complete,
            remove_on_fail=s.queue_remove_on_fail,
        )

    def with_changes(self, **changes: Any) -> "JobOptions":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff_type": self.backoff_type.value,
            "backoff_delay_ms": self.backoff_delay_ms,
            "delay_ms": self.delay_ms,
            "remove_on_complete": self.remove_on_complete,
            "remove_on_fail": self.remove_on_fail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], base: "JobOptions") -> "JobOptions":
        """Options stored as JSON, missing keys taken from `base`."""
        known = {k: v for k, v in data.items() if k in base.to_dict()}
        if "backoff_type" in known:
            known["backoff_type"] = BackoffType(known["backoff_type"])
        return replace(base, **known)


def backoff_seconds(backoff_type: BackoffType, delay_ms: int, attempts_made: int) -> float:
    """Delay before the next attempt after `attempts_made` failed attempts.

    Exponential: delay, 2*delay, 4*delay, ...
    """
    if backoff_type == BackoffType.FIXED:
        return delay_ms / 1000.0
    return (delay_ms * (2 ** max(attempts_made - 1, 0))) / 1000.0


@dataclass
class Job:
    """Snapshot of a queue job handed to handlers and status endpoints."""

    id: str
    queue: str
    kind: JobKind
    payload: dict[str, Any]
    status: JobStatus
    attempts_made: int
    max_attempts: int
    run_at: datetime
    created_at: datetime
    finished_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None


@dataclass
class RecurringJobInfo:
    key: str
    kind: JobKind
    every_seconds: int
    next_run_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)


class ProcessUserCallPayload(BaseModel):
    """Payload of a process-user-call job."""

    user_id: str = Field(..., min_length=1)
    phone: str | None = None
    name: str | None = None
    timezone: str | None = None
    call_time: str | None = None
    scheduled_at: datetime | None = None
    retry_count: int = Field(default=0, ge=0)
    original_call_id: str | None = None


class ScheduleTickPayload(BaseModel):
    """Payload of a schedule-tick job."""

    trigger: str = "recurring"
    manual: bool = False
