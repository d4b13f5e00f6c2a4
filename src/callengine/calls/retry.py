"""
Business retry policy for unsuccessful calls.

Separate from queue-level retries: those cover infrastructure failures of a
single job, this covers calls that reached a final failed / no_answer / busy
state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from callengine.config import Settings, get_settings
from callengine.queue.client import QueueClient
from callengine.queue.types import JobKind, ProcessUserCallPayload, QueueError
from callengine.shared.database import utcnow
from callengine.shared.logging import get_logger, mask_phone
from callengine.telephony.interface import CallStatus

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({CallStatus.FAILED, CallStatus.NO_ANSWER, CallStatus.BUSY})


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    reason: str
    next_retry_count: int | None = None
    delay: timedelta | None = None


@dataclass(frozen=True)
class RetryContext:
    """What the policy needs to know about the call that just ended."""

    call_id: str
    user_id: str
    phone: str
    status: CallStatus
    retry_count: int
    name: str | None = None
    timezone: str | None = None


@dataclass(frozen=True)
class RetryOutcome:
    decision: RetryDecision
    scheduled: bool = False
    job_id: str | None = None
    scheduled_at: datetime | None = None


class RetryPolicy:
    """Decides on and enqueues follow-up calls."""

    def __init__(
        self,
        queue: QueueClient,
        settings: Settings | None = None,
    ) -> None:
        s = settings or get_settings()
        self._queue = queue
        self.max_retries = s.max_call_retries
        self.delay = timedelta(minutes=s.retry_delay_minutes)

    def decide(self, status: CallStatus | str, retry_count: int) -> RetryDecision:
        """Pure decision: retry iff the status is retryable and retries remain."""
        status = CallStatus(status)
        if status not in RETRYABLE_STATUSES:
            return RetryDecision(False, reason=f"status {status.value} is not retryable")
        if retry_count >= self.max_retries:
            return RetryDecision(
                False,
                reason=f"max retries reached ({retry_count}/{self.max_retries})",
            )
        return RetryDecision(
            True,
            reason=f"status {status.value} is retryable",
            next_retry_count=retry_count + 1,
            delay=self.delay,
        )

    async def handle(
        self,
        ctx: RetryContext,
        now: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> RetryOutcome:
        """Decide and, when allowed, enqueue one delayed process-user-call job.

        Enqueue failures are logged and reported as not scheduled. With
        `session` the job joins the caller's transaction and an enqueue
        failure is raised instead, so the caller's changes roll back too.

        Raises:
            QueueError: only when `session` is given.
        """
        decision = self.decide(ctx.status, ctx.retry_count)
        if not decision.should_retry:
            logger.info(
                "No retry for call",
                extra={
                    "call_id": ctx.call_id,
                    "user_id": ctx.user_id,
                    "status": CallStatus(ctx.status).value,
                    "retry_count": ctx.retry_count,
                    "reason": decision.reason,
                },
            )
            return RetryOutcome(decision=decision)

        delay, next_retry_count = decision.delay, decision.next_retry_count
        if delay is None or next_retry_count is None:
            raise ValueError("retry decision without delay or retry count")

        now = now or utcnow()
        scheduled_at = now + delay
        payload = ProcessUserCallPayload(
            user_id=ctx.user_id,
            phone=ctx.phone,
            name=ctx.name,
            timezone=ctx.timezone,
            scheduled_at=scheduled_at,
            retry_count=next_retry_count,
            original_call_id=ctx.call_id,
        )
        # The follow-up itself is not retried at the queue level
        options = self._queue.default_options.with_changes(
            attempts=1,
            delay_ms=int(delay.total_seconds() * 1000),
        )

        try:
            job_id = await self._queue.add(
                JobKind.PROCESS_USER_CALL,
                payload.model_dump(mode="json"),
                options,
                now=now,
                session=session,
            )
        except QueueError:
            if session is not None:
                raise
            logger.exception(
                "Failed to schedule call retry",
                extra={"call_id": ctx.call_id, "user_id": ctx.user_id},
            )
            return RetryOutcome(decision=decision)

        logger.info(
            "Call retry scheduled",
            extra={
                "call_id": ctx.call_id,
                "user_id": ctx.user_id,
                "to": mask_phone(ctx.phone),
                "retry_count": next_retry_count,
                "max_retries": self.max_retries,
                "scheduled_at": scheduled_at.isoformat(),
                "job_id": job_id,
            },
        )
        return RetryOutcome(
            decision=decision,
            scheduled=True,
            job_id=job_id,
            scheduled_at=scheduled_at,
        )
