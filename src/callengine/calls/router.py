"""
FastAPI router for manual call triggers and queue inspection.

Authentication happens upstream; the authenticated user id arrives in the
X-User-Id header.
"""

from __future__ import annotations

from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from callengine.calls.dispatcher import CallDispatcher, DispatchRequest
from callengine.calls.schemas import (
    InitiateCallResponse,
    QueueStatusResponse,
    RecurringJobResponse,
    TriggerResponse,
)
from callengine.dependencies import get_database_manager, get_dispatcher, get_queue
from callengine.queue.client import QueueClient
from callengine.queue.jobs import TICK_JOB_OPTIONS
from callengine.queue.types import JobKind, ScheduleTickPayload
from callengine.shared.database import DatabaseManager
from callengine.shared.exceptions import NotFoundError, ValidationError
from callengine.shared.logging import get_logger
from callengine.users.repository import UserProfileRepository

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["calls"])


def require_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return x_user_id


@router.post("/calls/initiate", response_model=InitiateCallResponse)
async def initiate_call(
    user_id: Annotated[str, Depends(require_user_id)],
    db: Annotated[DatabaseManager, Depends(get_database_manager)],
    dispatcher: Annotated[CallDispatcher, Depends(get_dispatcher)],
) -> InitiateCallResponse:
    """Call the authenticated user now (subject to the one-call-per-day guard)."""
    async with db.session() as session:
        profile = await UserProfileRepository(session).get_by_id(user_id)
        if profile is None:
            raise NotFoundError(f"User {user_id} not found")
        phone, name, tz = profile.phone, profile.name, profile.local_tz

    if not phone:
        raise ValidationError("Phone number not set for user")

    try:
        result = await dispatcher.dispatch(
            DispatchRequest(user_id=user_id, phone=phone, name=name, timezone=tz)
        )
    except httpx.TransportError as exc:
        # No queue attempt behind this request; the record is already marked failed
        logger.error(
            "Manual call failed: provider unreachable",
            extra={"user_id": user_id, "error": str(exc)},
        )
        return InitiateCallResponse(success=False, error="Call provider unavailable")

    return InitiateCallResponse(
        success=result.success,
        call_id=result.call_id,
        vendor_call_id=result.vendor_call_id,
        message=result.message,
        error=result.error,
        skipped=result.skipped,
        reason=result.reason,
    )


@router.post("/queue/trigger", response_model=TriggerResponse)
async def trigger_schedule_tick(
    user_id: Annotated[str, Depends(require_user_id)],
    queue: Annotated[QueueClient, Depends(get_queue)],
) -> TriggerResponse:
    """Enqueue a one-off schedule tick (not retried)."""
    job_id = await queue.add(
        JobKind.SCHEDULE_TICK,
        ScheduleTickPayload(trigger="manual", manual=True).model_dump(),
        TICK_JOB_OPTIONS.with_changes(attempts=1),
    )
    logger.info("Manual schedule tick enqueued", extra={"job_id": job_id, "user_id": user_id})
    return TriggerResponse(job_id=job_id)


@router.get("/queue/status", response_model=QueueStatusResponse)
async def queue_status(
    _: Annotated[str, Depends(require_user_id)],
    queue: Annotated[QueueClient, Depends(get_queue)],
) -> QueueStatusResponse:
    try:
        counts = await queue.get_counts()
        recurring = await queue.get_recurring_jobs()
    except SQLAlchemyError:
        logger.exception("Queue status check failed")
        return QueueStatusResponse(name=queue.name, health="unhealthy")

    return QueueStatusResponse(
        name=queue.name,
        health="healthy",
        recurring=[
            RecurringJobResponse(
                key=r.key,
                kind=r.kind.value,
                every_seconds=r.every_seconds,
                next_run_at=r.next_run_at,
            )
            for r in recurring
        ],
        **counts,
    )
