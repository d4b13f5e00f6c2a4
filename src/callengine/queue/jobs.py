"""
Job handlers for the daily-calls queue and the pool that runs them.
"""

from __future__ import annotations

from typing import Any

from callengine.calls.dispatcher import CallDispatcher, DispatchRequest
from callengine.calls.scheduler import EligibilityScheduler
from callengine.config import Settings, get_settings
from callengine.queue.client import QueueClient
from callengine.queue.types import (
    Job,
    JobKind,
    JobOptions,
    ProcessUserCallPayload,
    ScheduleTickPayload,
)
from callengine.queue.worker import WorkerPool
from callengine.shared.logging import get_logger

logger = get_logger(__name__)

SCHEDULE_TICK_KEY = "schedule-tick:every"

# Ticks are cheap to lose; keep a short history
TICK_JOB_OPTIONS = JobOptions(remove_on_complete=10, remove_on_fail=50)


class DailyCallJobs:
    """Handlers for schedule-tick and process-user-call jobs."""

    def __init__(self, scheduler: EligibilityScheduler, dispatcher: CallDispatcher) -> None:
        self._scheduler = scheduler
        self._dispatcher = dispatcher

    async def schedule_tick(self, job: Job) -> dict[str, Any]:
        payload = ScheduleTickPayload.model_validate(job.payload)
        logger.info(
            "Running schedule tick",
            extra={"trigger": payload.trigger, "manual": payload.manual},
        )
        result = await self._scheduler.run_tick()
        return {
            "users_scheduled": result.users_scheduled,
            "user_ids": result.user_ids,
            "failed_user_ids": result.failed_user_ids,
        }

    async def process_user_call(self, job: Job) -> dict[str, Any]:
        payload = ProcessUserCallPayload.model_validate(job.payload)
        result = await self._dispatcher.dispatch(
            DispatchRequest(
                user_id=payload.user_id,
                phone=payload.phone,
                name=payload.name,
                timezone=payload.timezone,
                retry_count=payload.retry_count,
                original_call_id=payload.original_call_id,
                scheduled_at=payload.scheduled_at,
            )
        )
        return result.as_dict()


def build_worker_pool(
    queue: QueueClient,
    jobs: DailyCallJobs,
    settings: Settings | None = None,
    worker_id: str | None = None,
) -> WorkerPool:
    """Worker pool with schedule-tick exclusive and process-user-call at QUEUE_CONCURRENCY."""
    s = settings or get_settings()
    pool = WorkerPool(queue, worker_id=worker_id, settings=s)
    pool.register(JobKind.SCHEDULE_TICK, jobs.schedule_tick, concurrency=1, exclusive=True)
    pool.register(
        JobKind.PROCESS_USER_CALL,
        jobs.process_user_call,
        concurrency=s.queue_concurrency,
    )
    return pool


async def register_schedule_tick(queue: QueueClient, settings: Settings | None = None) -> None:
    """Replace every recurring registration with exactly one schedule tick."""
    s = settings or get_settings()
    removed = await queue.clear_recurring()
    info = await queue.add_recurring(
        SCHEDULE_TICK_KEY,
        JobKind.SCHEDULE_TICK,
        every_seconds=s.scheduler_tick_seconds,
        payload=ScheduleTickPayload().model_dump(),
        options=TICK_JOB_OPTIONS,
    )
    logger.info(
        "Schedule tick registered",
        extra={
            "removed_registrations": removed,
            "every_seconds": info.every_seconds,
            "next_run_at": info.next_run_at.isoformat(),
        },
    )
