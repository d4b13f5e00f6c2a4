"""
Tests for the call record repository.
"""

from datetime import datetime, timedelta, timezone

import pytest

from callengine.calls.repository import CallRecordRepository
from callengine.shared.database import DatabaseManager
from callengine.shared.exceptions import NotFoundError
from callengine.telephony.interface import CallStatus
from conftest import add_call, get_call


class TestCallRecordRepository:
    @pytest.mark.asyncio
    async def test_create_defaults_to_queued(self, db: DatabaseManager) -> None:
        async with db.session() as session:
            record = await CallRecordRepository(session).create(
                user_id="u-1",
                to_number="+15550001111",
                agent_id="agent-1",
                vendor="mock",
            )
            call_id = record.id

        stored = await get_call(db, call_id)
        assert stored.status == CallStatus.QUEUED
        assert stored.retry_count == 0
        assert stored.parent_call_id is None
        assert stored.vendor_call_id is None
        assert stored.created_at.tzinfo is not None
        assert stored.completed_at is None

    @pytest.mark.asyncio
    async def test_mark_ringing_sets_vendor_id(self, db: DatabaseManager) -> None:
        call_id = await add_call(db, "u-1", CallStatus.QUEUED)

        async with db.session() as session:
            await CallRecordRepository(session).mark_ringing(call_id, "v-1", {"call_id": "v-1"})

        stored = await get_call(db, call_id)
        assert stored.status == CallStatus.RINGING
        assert stored.vendor_call_id == "v-1"
        assert stored.vendor_payload["initiate"] == {"call_id": "v-1"}

    @pytest.mark.asyncio
    async def test_mark_ringing_does_not_regress_status(self, db: DatabaseManager) -> None:
        call_id = await add_call(db, "u-1", CallStatus.IN_PROGRESS)

        async with db.session() as session:
            await CallRecordRepository(session).mark_ringing(call_id, "v-2", {})

        assert (await get_call(db, call_id)).status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_mark_failed(self, db: DatabaseManager) -> None:
        call_id = await add_call(db, "u-1", CallStatus.QUEUED)

        async with db.session() as session:
            await CallRecordRepository(session).mark_failed(call_id, "vendor down")

        stored = await get_call(db, call_id)
        assert stored.status == CallStatus.FAILED
        assert stored.vendor_payload == {"error": "vendor down"}
        assert stored.completed_at is not None

    @pytest.mark.asyncio
    async def test_mark_failed_unknown_call(self, db: DatabaseManager) -> None:
        with pytest.raises(NotFoundError):
            async with db.session() as session:
                await CallRecordRepository(session).mark_failed("missing", "x")

    @pytest.mark.asyncio
    async def test_get_by_vendor_call_id(self, db: DatabaseManager) -> None:
        call_id = await add_call(db, "u-1", CallStatus.RINGING, vendor_call_id="v-9")

        async with db.session() as session:
            repo = CallRecordRepository(session)
            found = await repo.get_by_vendor_call_id("v-9")
            missing = await repo.get_by_vendor_call_id("v-404")

        assert found is not None and found.id == call_id
        assert missing is None

    @pytest.mark.asyncio
    async def test_has_blocking_call_ignores_unsuccessful_statuses(self, db: DatabaseManager) -> None:
        day_start = datetime(2024, 1, 15, tzinfo=timezone.utc)
        day_end = day_start + timedelta(days=1)
        at = day_start + timedelta(hours=21)
        for status in (CallStatus.FAILED, CallStatus.NO_ANSWER, CallStatus.BUSY):
            await add_call(db, "u-1", status, created_at=at)

        async with db.session() as session:
            repo = CallRecordRepository(session)
            assert await repo.has_blocking_call("u-1", day_start, day_end) is False

        await add_call(db, "u-1", CallStatus.COMPLETED, created_at=at)
        async with db.session() as session:
            repo = CallRecordRepository(session)
            assert await repo.has_blocking_call("u-1", day_start, day_end) is True
            # Other day, other user
            assert await repo.has_blocking_call("u-1", day_end, day_end + timedelta(days=1)) is False
            assert await repo.has_blocking_call("u-2", day_start, day_end) is False

    @pytest.mark.asyncio
    async def test_blocking_call_times_groups_by_user(self, db: DatabaseManager) -> None:
        since = datetime(2024, 1, 15, tzinfo=timezone.utc)
        t1 = since + timedelta(hours=1)
        t2 = since + timedelta(hours=2)
        await add_call(db, "u-1", CallStatus.RINGING, created_at=t1)
        await add_call(db, "u-2", CallStatus.QUEUED, created_at=t2)
        await add_call(db, "u-2", CallStatus.BUSY, created_at=t2)
        await add_call(db, "u-3", CallStatus.COMPLETED, created_at=since - timedelta(hours=1))

        async with db.session() as session:
            times = await CallRecordRepository(session).blocking_call_times(
                ["u-1", "u-2", "u-3"], since
            )

        assert times == {"u-1": [t1], "u-2": [t2]}
