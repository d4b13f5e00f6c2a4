"""
Repository for call record database operations.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callengine.calls.models import CallRecord
from callengine.shared.database import utcnow
from callengine.shared.exceptions import NotFoundError
from callengine.telephony.interface import ACTIVE_OR_SUCCESSFUL_STATUSES, CallStatus


class CallRecordRepository:
    """Repository for call record database operations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def create(
        self,
        user_id: str,
        to_number: str,
        agent_id: str,
        vendor: str,
        retry_count: int = 0,
        parent_call_id: str | None = None,
        scheduled_at: datetime | None = None,
    ) -> CallRecord:
        """Create a new call record in status queued.

        Args:
            user_id: Owner of the call.
            to_number: Phone number snapshot at dispatch time.
            agent_id: Vendor agent/assistant identifier.
            vendor: Provider name.
            retry_count: 0 for a first attempt, n for the n-th business retry.
            parent_call_id: Call this record retries, if any.
            scheduled_at: When the job that created the call was scheduled.

        Returns:
            Created CallRecord instance.
        """
        now = utcnow()
        record = CallRecord(
            user_id=user_id,
            to_number=to_number,
            agent_id=agent_id,
            vendor=vendor,
            vendor_payload={},
            status=CallStatus.QUEUED,
            retry_count=retry_count,
            parent_call_id=parent_call_id,
            created_at=now,
            scheduled_at=scheduled_at,
            last_status_at=now,
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def get_by_id(self, call_id: str, for_update: bool = False) -> CallRecord | None:
        stmt = select(CallRecord).where(CallRecord.id == call_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_vendor_call_id(
        self,
        vendor_call_id: str,
        for_update: bool = False,
    ) -> CallRecord | None:
        """Get a call record by vendor call id.

        Args:
            vendor_call_id: Identifier assigned by the vendor.
            for_update: Lock the row for the rest of the transaction.
        """
        stmt = select(CallRecord).where(CallRecord.vendor_call_id == vendor_call_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _require(self, call_id: str) -> CallRecord:
        record = await self.get_by_id(call_id)
        if record is None:
            raise NotFoundError(f"Call record {call_id} not found")
        return record

    async def mark_ringing(
        self,
        call_id: str,
        vendor_call_id: str,
        vendor_response: dict[str, Any],
    ) -> CallRecord:
        """Record vendor acceptance: vendor id, raw response, status ringing."""
        record = await self._require(call_id)
        record.vendor_call_id = vendor_call_id
        record.vendor_payload = {**(record.vendor_payload or {}), "initiate": vendor_response}
        # A webhook may already have advanced the record past ringing
        if record.status == CallStatus.QUEUED:
            record.status = CallStatus.RINGING
            record.last_status_at = utcnow()
        await self._session.flush()
        return record

    async def mark_failed(
        self,
        call_id: str,
        error: str,
        vendor_response: dict[str, Any] | None = None,
    ) -> CallRecord:
        """Record a vendor-side initiation failure."""
        record = await self._require(call_id)
        now = utcnow()
        payload: dict[str, Any] = {"error": error}
        if vendor_response:
            payload["response"] = vendor_response
        record.vendor_payload = payload
        record.status = CallStatus.FAILED
        record.last_status_at = now
        record.completed_at = now
        await self._session.flush()
        return record

    async def has_blocking_call(
        self,
        user_id: str,
        day_start: datetime,
        day_end: datetime,
    ) -> bool:
        """True if the user has a queued/ringing/in-progress/completed call in [day_start, day_end)."""
        stmt = (
            select(CallRecord.id)
            .where(
                CallRecord.user_id == user_id,
                CallRecord.created_at >= day_start,
                CallRecord.created_at < day_end,
                CallRecord.status.in_(list(ACTIVE_OR_SUCCESSFUL_STATUSES)),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.first() is not None

    async def blocking_call_times(
        self,
        user_ids: Iterable[str],
        since: datetime,
    ) -> dict[str, list[datetime]]:
        """Creation times of blocking calls per user since a UTC instant.

        Used by the scheduler to evaluate every candidate's local day in one query.
        """
        ids = list(user_ids)
        if not ids:
            return {}
        stmt = select(CallRecord.user_id, CallRecord.created_at).where(
            CallRecord.user_id.in_(ids),
            CallRecord.created_at >= since,
            CallRecord.status.in_(list(ACTIVE_OR_SUCCESSFUL_STATUSES)),
        )
        result = await self._session.execute(stmt)
        times: dict[str, list[datetime]] = defaultdict(list)
        for user_id, created_at in result.all():
            times[user_id].append(created_at)
        return dict(times)

    async def list_for_user(self, user_id: str, limit: int = 20) -> Sequence[CallRecord]:
        stmt = (
            select(CallRecord)
            .where(CallRecord.user_id == user_id)
            .order_by(CallRecord.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
