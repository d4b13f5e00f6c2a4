"""
Call dispatcher: turns one process-user-call job into one vendor call.

Order of operations per dispatch:
1. duplicate guard (first attempts only)
2. create the call record (queued)
3. initiate the vendor call
4. record the outcome (ringing + vendor id, or failed)

The record is committed before the vendor is contacted and its id is sent
as metadata["call_id"], so a webhook that beats step 4 can still be matched
to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from callengine.calls.repository import CallRecordRepository
from callengine.calls.retry import RetryContext, RetryPolicy
from callengine.calls.scheduler import local_day_bounds, resolve_timezone
from callengine.config import Settings, get_settings
from callengine.shared.database import DatabaseManager, utcnow
from callengine.shared.logging import get_logger, log_with_context, mask_phone
from callengine.telephony.interface import CallProvider, CallStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatchRequest:
    user_id: str
    phone: str | None
    name: str | None = None
    timezone: str | None = None
    retry_count: int = 0
    original_call_id: str | None = None
    scheduled_at: datetime | None = None


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    skipped: bool = False
    reason: str | None = None
    call_id: str | None = None
    vendor_call_id: str | None = None
    message: str | None = None
    error: str | None = None
    retry_scheduled: bool = False

    def as_dict(self) -> dict[str, object]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class CallDispatcher:
    """Places calls through the configured provider."""

    def __init__(
        self,
        db: DatabaseManager,
        provider: CallProvider,
        retry_policy: RetryPolicy | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._db = db
        self._provider = provider
        self._retry_policy = retry_policy
        self._settings = settings or get_settings()

    async def has_call_today(self, user_id: str, tz_name: str | None, now: datetime | None = None) -> bool:
        """Whether the user already has a queued/ringing/in-progress/completed call on their local day."""
        tz = resolve_timezone(tz_name, self._settings.default_timezone)
        day_start, day_end = local_day_bounds(now or utcnow(), tz)
        async with self._db.session() as session:
            return await CallRecordRepository(session).has_blocking_call(user_id, day_start, day_end)

    async def dispatch(self, request: DispatchRequest, now: datetime | None = None) -> DispatchResult:
        """Dispatch one call.

        Raises:
            httpx.TransportError: vendor unreachable; left to the queue's
                attempt/backoff handling.
            sqlalchemy.exc.SQLAlchemyError: the call record could not be created.
        """
        extra = {"user_id": request.user_id, "retry_count": request.retry_count}

        if not request.phone:
            logger.warning("Dispatch without phone number", extra=extra)
            return DispatchResult(success=False, error="Phone number is required")

        # Retries are expected to add a second record for the same day
        if request.retry_count == 0:
            if await self.has_call_today(request.user_id, request.timezone, now):
                logger.info("Skipping dispatch: user already has a call today", extra=extra)
                return DispatchResult(success=True, skipped=True, reason="duplicate")

        provider = self._provider
        agent_id = provider.agent_id

        async with self._db.session() as session:
            record = await CallRecordRepository(session).create(
                user_id=request.user_id,
                to_number=request.phone,
                agent_id=agent_id,
                vendor=provider.name,
                retry_count=request.retry_count,
                parent_call_id=request.original_call_id,
                scheduled_at=request.scheduled_at,
            )
            call_id = record.id

        extra["call_id"] = call_id
        logger.info(
            "Call record created; initiating vendor call",
            extra={**extra, "to": mask_phone(request.phone), "provider": provider.name},
        )

        metadata = {
            "call_id": call_id,
            "user_id": request.user_id,
            "user_name": request.name or "",
            "retry_count": request.retry_count,
        }

        try:
            result = await provider.initiate_call(request.phone, agent_id, metadata)
        except Exception as exc:
            # Free the user's day so the queue's next attempt is not skipped as a duplicate
            await self._mark_failed(call_id, f"Transport error: {exc}", None)
            raise

        if not result.success:
            error = result.error or "Call initiation failed"
            logger.warning("Vendor rejected call", extra={**extra, "error": error})
            await self._mark_failed(call_id, error, result.raw_response)

            retry_scheduled = False
            if self._retry_policy is not None:
                outcome = await self._retry_policy.handle(
                    RetryContext(
                        call_id=call_id,
                        user_id=request.user_id,
                        phone=request.phone,
                        status=CallStatus.FAILED,
                        retry_count=request.retry_count,
                        name=request.name,
                        timezone=request.timezone,
                    )
                )
                retry_scheduled = outcome.scheduled

            return DispatchResult(
                success=False,
                call_id=call_id,
                error=error,
                retry_scheduled=retry_scheduled,
            )

        vendor_call_id = result.vendor_call_id or ""
        try:
            async with self._db.session() as session:
                await CallRecordRepository(session).mark_ringing(
                    call_id,
                    vendor_call_id,
                    result.raw_response,
                )
        except Exception as exc:
            # The vendor call exists but our record does not reference it
            log_with_context(
                logger,
                logging.CRITICAL,
                "Call placed but record update failed",
                alert="call_state_inconsistent",
                call_id=call_id,
                vendor_call_id=vendor_call_id,
                user_id=request.user_id,
                error=str(exc),
            )

        logger.info(
            "Call initiated",
            extra={**extra, "vendor_call_id": vendor_call_id, "provider": provider.name},
        )
        return DispatchResult(
            success=True,
            call_id=call_id,
            vendor_call_id=vendor_call_id,
            message=result.message or "Call initiated successfully",
        )

    async def _mark_failed(
        self,
        call_id: str,
        error: str,
        vendor_response: dict[str, object] | None,
    ) -> None:
        try:
            async with self._db.session() as session:
                await CallRecordRepository(session).mark_failed(call_id, error, vendor_response)
        except Exception as exc:
            log_with_context(
                logger,
                logging.CRITICAL,
                "Failed to mark call as failed",
                alert="call_state_inconsistent",
                call_id=call_id,
                error=str(exc),
            )
