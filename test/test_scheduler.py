"""
Tests for the eligibility scheduler.
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from callengine.calls.scheduler import (
    EligibilityScheduler,
    call_day_bounds,
    is_in_call_window,
    local_day_bounds,
    parse_call_time,
    resolve_timezone,
)
from callengine.queue.client import QueueClient
from callengine.queue.types import JobKind
from callengine.shared.database import DatabaseManager
from callengine.telephony.interface import CallStatus
from conftest import add_call, add_user

# 21:02 in New York (EST, UTC-5) on 2024-01-14
NY_2102 = datetime(2024, 1, 15, 2, 2, tzinfo=timezone.utc)


class TestWindowHelpers:
    def test_parse_call_time(self) -> None:
        assert parse_call_time("21:00:00", "09:00") == 21 * 60
        assert parse_call_time("07:45", "09:00") == 7 * 60 + 45
        assert parse_call_time(None, "09:00") == 9 * 60
        assert parse_call_time("garbage", "09:00") == 9 * 60

    def test_resolve_timezone_falls_back(self) -> None:
        assert resolve_timezone("America/New_York", "UTC").key == "America/New_York"
        assert resolve_timezone("Not/AZone", "UTC").key == "UTC"
        assert resolve_timezone(None, "Asia/Kolkata").key == "Asia/Kolkata"

    @pytest.mark.parametrize(
        ("minute", "expected"),
        [(59, False), (0, True), (2, True), (4, True), (5, False)],
    )
    def test_window_bounds(self, minute: int, expected: bool) -> None:
        tz = ZoneInfo("UTC")
        hour = 20 if minute == 59 else 21
        now = datetime(2024, 1, 15, hour, minute, tzinfo=timezone.utc)
        assert is_in_call_window(now, tz, 21 * 60, 5) is expected

    @pytest.mark.parametrize(
        ("hour", "minute", "expected"),
        [(23, 55, False), (23, 58, True), (0, 0, True), (0, 2, True), (0, 3, False)],
    )
    def test_window_wraps_past_midnight(self, hour: int, minute: int, expected: bool) -> None:
        now = datetime(2024, 1, 15, hour, minute, tzinfo=timezone.utc)
        assert is_in_call_window(now, ZoneInfo("UTC"), 23 * 60 + 58, 5) is expected

    def test_call_day_bounds_for_window_crossing_midnight(self) -> None:
        now = datetime(2024, 1, 16, 0, 0, 30, tzinfo=timezone.utc)
        start, end = call_day_bounds(now, ZoneInfo("UTC"), 23 * 60 + 58, 5)
        assert end == datetime(2024, 1, 16, 0, 3, tzinfo=timezone.utc)
        assert start == datetime(2024, 1, 15, 0, 3, tzinfo=timezone.utc)

    def test_call_day_bounds_is_calendar_day_otherwise(self) -> None:
        tz = ZoneInfo("America/New_York")
        assert call_day_bounds(NY_2102, tz, 21 * 60, 5) == local_day_bounds(NY_2102, tz)

    def test_local_day_bounds(self) -> None:
        start, end = local_day_bounds(NY_2102, ZoneInfo("America/New_York"))
        assert start == datetime(2024, 1, 14, 5, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 1, 15, 5, 0, tzinfo=timezone.utc)

    def test_local_day_bounds_across_dst_change(self) -> None:
        # 2024-03-10 is 23 hours long in New York
        now = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
        start, end = local_day_bounds(now, ZoneInfo("America/New_York"))
        assert end - start == timedelta(hours=23)


class TestEligibilityScheduler:
    @pytest.mark.asyncio
    async def test_user_in_local_window_is_eligible(
        self,
        db: DatabaseManager,
        scheduler: EligibilityScheduler,
    ) -> None:
        await add_user(db, "ny", local_tz="America/New_York", call_time="21:00:00")
        # Same instant is 02:02 UTC, far from the UTC default 21:00
        await add_user(db, "utc-default")

        users = await scheduler.find_eligible_users(NY_2102)

        assert [u.user_id for u in users] == ["ny"]
        assert users[0].timezone == "America/New_York"

    @pytest.mark.asyncio
    async def test_disabled_and_phoneless_users_are_skipped(
        self,
        db: DatabaseManager,
        scheduler: EligibilityScheduler,
    ) -> None:
        await add_user(db, "off", local_tz="America/New_York", call_time="21:00", call_enabled=False)
        await add_user(db, "nophone", local_tz="America/New_York", call_time="21:00", phone=None)

        assert await scheduler.find_eligible_users(NY_2102) == []

    @pytest.mark.asyncio
    async def test_outside_window(self, db: DatabaseManager, scheduler: EligibilityScheduler) -> None:
        await add_user(db, "later", local_tz="America/New_York", call_time="21:06")
        await add_user(db, "earlier", local_tz="America/New_York", call_time="20:55")

        assert await scheduler.find_eligible_users(NY_2102) == []

    @pytest.mark.asyncio
    async def test_invalid_timezone_uses_default(
        self,
        db: DatabaseManager,
        scheduler: EligibilityScheduler,
    ) -> None:
        await add_user(db, "bad-tz", local_tz="Mars/Olympus", call_time="02:00")

        users = await scheduler.find_eligible_users(NY_2102)
        assert [u.user_id for u in users] == ["bad-tz"]
        assert users[0].timezone == "UTC"

    @pytest.mark.asyncio
    async def test_user_with_call_today_is_excluded(
        self,
        db: DatabaseManager,
        scheduler: EligibilityScheduler,
    ) -> None:
        await add_user(db, "done", local_tz="America/New_York", call_time="21:00")
        await add_user(db, "failed-only", local_tz="America/New_York", call_time="21:00")
        # 10:00 local on the same local day
        await add_call(db, "done", CallStatus.COMPLETED, created_at=datetime(2024, 1, 14, 15, 0, tzinfo=timezone.utc))
        await add_call(db, "failed-only", CallStatus.NO_ANSWER, created_at=datetime(2024, 1, 14, 15, 0, tzinfo=timezone.utc))

        users = await scheduler.find_eligible_users(NY_2102)
        assert [u.user_id for u in users] == ["failed-only"]

    @pytest.mark.asyncio
    async def test_call_on_previous_local_day_does_not_block(
        self,
        db: DatabaseManager,
        scheduler: EligibilityScheduler,
    ) -> None:
        await add_user(db, "ny", local_tz="America/New_York", call_time="21:00")
        # 23:00 local on 2024-01-13, same UTC date as the local day start
        await add_call(db, "ny", CallStatus.COMPLETED, created_at=datetime(2024, 1, 14, 4, 0, tzinfo=timezone.utc))

        users = await scheduler.find_eligible_users(NY_2102)
        assert [u.user_id for u in users] == ["ny"]

    @pytest.mark.asyncio
    async def test_run_tick_enqueues_one_job_per_user(
        self,
        db: DatabaseManager,
        scheduler: EligibilityScheduler,
        queue: QueueClient,
    ) -> None:
        await add_user(db, "a", local_tz="America/New_York", call_time="21:00", name="Ana")
        await add_user(db, "b", local_tz="America/New_York", call_time="21:01")

        result = await scheduler.run_tick(NY_2102)

        assert result.users_scheduled == 2
        assert sorted(result.user_ids) == ["a", "b"]

        jobs = await queue.list_jobs(kind=JobKind.PROCESS_USER_CALL)
        assert len(jobs) == 2
        payload = next(j.payload for j in jobs if j.payload["user_id"] == "a")
        assert payload["phone"] == "+15550001111"
        assert payload["name"] == "Ana"
        assert payload["timezone"] == "America/New_York"
        assert payload["call_time"] == "21:00"
        assert payload["retry_count"] == 0
        assert payload["original_call_id"] is None
        assert all(j.max_attempts == 3 for j in jobs)

    @pytest.mark.asyncio
    async def test_run_tick_without_eligible_users(
        self,
        scheduler: EligibilityScheduler,
        queue: QueueClient,
    ) -> None:
        result = await scheduler.run_tick(NY_2102)

        assert result.users_scheduled == 0
        assert await queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_call_time_just_before_midnight_gets_one_tick(
        self,
        db: DatabaseManager,
        scheduler: EligibilityScheduler,
    ) -> None:
        await add_user(db, "late", local_tz="UTC", call_time="23:58")
        ticks = [
            datetime(2024, 1, 15, 23, 55, tzinfo=timezone.utc),
            datetime(2024, 1, 16, 0, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 16, 0, 5, tzinfo=timezone.utc),
        ]

        hits = [len(await scheduler.find_eligible_users(tick)) for tick in ticks]
        assert hits == [0, 1, 0]

    @pytest.mark.asyncio
    async def test_window_crossing_midnight_uses_its_own_day(
        self,
        db: DatabaseManager,
        scheduler: EligibilityScheduler,
    ) -> None:
        await add_user(db, "late", local_tz="UTC", call_time="23:58")
        # Placed by the previous night's 00:00 tick
        await add_call(db, "late", CallStatus.COMPLETED, created_at=datetime(2024, 1, 16, 0, 0, 10, tzinfo=timezone.utc))

        # Next night: the earlier call belongs to the previous window
        users = await scheduler.find_eligible_users(datetime(2024, 1, 17, 0, 0, tzinfo=timezone.utc))
        assert [u.user_id for u in users] == ["late"]

        # Same night, later tick still inside a longer window
        await add_call(db, "late", CallStatus.RINGING, created_at=datetime(2024, 1, 17, 0, 0, 10, tzinfo=timezone.utc))
        assert await scheduler.find_eligible_users(datetime(2024, 1, 17, 0, 1, tzinfo=timezone.utc)) == []
