"""
Eligibility scheduler for daily calls.

Runs on every schedule-tick job: finds users whose local call time falls in
the current window (which may cross local midnight) and who have not had
their call today, and enqueues one process-user-call job per user. Apart
from enqueueing it never writes, so a tick can be re-run safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from callengine.calls.repository import CallRecordRepository
from callengine.config import Settings, get_settings
from callengine.queue.client import QueueClient
from callengine.queue.types import JobKind, ProcessUserCallPayload, QueueError
from callengine.shared.database import DatabaseManager, utcnow
from callengine.shared.logging import get_logger
from callengine.users.repository import UserProfileRepository

logger = get_logger(__name__)


def resolve_timezone(name: str | None, default: str) -> ZoneInfo:
    """ZoneInfo for `name`, falling back to `default` when missing or unknown."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Unknown timezone, using default",
                extra={"timezone": name, "default_timezone": default},
            )
    return ZoneInfo(default)


def parse_call_time(value: str | None, default: str) -> int:
    """Minutes after local midnight for an HH:MM[:SS] string."""
    for candidate in (value, default):
        if not candidate:
            continue
        parts = candidate.strip().split(":")
        if len(parts) in (2, 3) and all(p.isdigit() for p in parts):
            hour, minute = int(parts[0]), int(parts[1])
            if 0 <= hour < 24 and 0 <= minute < 60:
                return hour * 60 + minute
        if candidate is value:
            logger.warning(
                "Invalid call time, using default",
                extra={"call_time": value, "default_call_time": default},
            )
    raise ValueError(f"Invalid default call time: {default!r}")


def local_day_bounds(now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC bounds [start, end) of the calendar day containing `now` in `tz`."""
    local_date = now.astimezone(tz).date()
    start = datetime.combine(local_date, time(0), tzinfo=tz)
    end = datetime.combine(local_date + timedelta(days=1), time(0), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


MINUTES_PER_DAY = 24 * 60


def minutes_into_window(now: datetime, tz: ZoneInfo, call_minutes: int) -> int:
    """Minutes since the most recent local occurrence of call_minutes (0..1439)."""
    local = now.astimezone(tz)
    return (local.hour * 60 + local.minute - call_minutes) % MINUTES_PER_DAY


def is_in_call_window(now: datetime, tz: ZoneInfo, call_minutes: int, window_minutes: int) -> bool:
    """Local time falls in [call time, call time + window), wrapping past midnight."""
    return minutes_into_window(now, tz, call_minutes) < window_minutes


def call_day_bounds(
    now: datetime,
    tz: ZoneInfo,
    call_minutes: int,
    window_minutes: int,
) -> tuple[datetime, datetime]:
    """UTC bounds of the period in which an existing call counts as today's call.

    Normally the local calendar day. A window that crosses midnight would
    otherwise see its own call land on the next calendar day, so it uses
    the 24 hours ending where the current window ends.
    """
    if call_minutes + window_minutes <= MINUTES_PER_DAY:
        return local_day_bounds(now, tz)
    elapsed = minutes_into_window(now, tz, call_minutes)
    window_end = now.replace(second=0, microsecond=0) + timedelta(minutes=window_minutes - elapsed)
    return window_end - timedelta(days=1), window_end


@dataclass(frozen=True)
class EligibleUser:
    user_id: str
    phone: str
    name: str | None
    timezone: str
    call_time: str


@dataclass
class ScheduleTickResult:
    users_scheduled: int = 0
    user_ids: list[str] = field(default_factory=list)
    job_ids: list[str] = field(default_factory=list)
    failed_user_ids: list[str] = field(default_factory=list)


class EligibilityScheduler:
    """Selects users due for their daily call and enqueues their jobs."""

    def __init__(
        self,
        db: DatabaseManager,
        queue: QueueClient,
        settings: Settings | None = None,
    ) -> None:
        self._db = db
        self._queue = queue
        self._settings = settings or get_settings()

    async def find_eligible_users(self, now: datetime | None = None) -> list[EligibleUser]:
        now = now or utcnow()
        s = self._settings

        async with self._db.session() as session:
            profiles = await UserProfileRepository(session).list_callable()

            in_window: list[tuple[EligibleUser, datetime, datetime]] = []
            for profile in profiles:
                tz = resolve_timezone(profile.local_tz, s.default_timezone)
                call_minutes = parse_call_time(profile.call_time, s.default_call_time)
                if not is_in_call_window(now, tz, call_minutes, s.call_time_window_minutes):
                    continue
                day_start, day_end = call_day_bounds(
                    now, tz, call_minutes, s.call_time_window_minutes
                )
                user = EligibleUser(
                    user_id=profile.id,
                    phone=profile.phone or "",
                    name=profile.name,
                    timezone=tz.key,
                    call_time=profile.call_time or s.default_call_time,
                )
                in_window.append((user, day_start, day_end))

            if not in_window:
                return []

            since = min(start for _, start, _ in in_window)
            blocking = await CallRecordRepository(session).blocking_call_times(
                (user.user_id for user, _, _ in in_window),
                since,
            )

        eligible: list[EligibleUser] = []
        for user, day_start, day_end in in_window:
            if any(day_start <= created < day_end for created in blocking.get(user.user_id, [])):
                logger.debug("User already has a call today", extra={"user_id": user.user_id})
                continue
            eligible.append(user)
        return eligible

    async def run_tick(self, now: datetime | None = None) -> ScheduleTickResult:
        """Enqueue one process-user-call job per eligible user."""
        now = now or utcnow()
        users = await self.find_eligible_users(now)
        result = ScheduleTickResult()

        for user in users:
            payload = ProcessUserCallPayload(
                user_id=user.user_id,
                phone=user.phone,
                name=user.name,
                timezone=user.timezone,
                call_time=user.call_time,
                scheduled_at=now,
            )
            try:
                job_id = await self._queue.add(
                    JobKind.PROCESS_USER_CALL,
                    payload.model_dump(mode="json"),
                )
            except QueueError:
                logger.exception("Failed to enqueue user call", extra={"user_id": user.user_id})
                result.failed_user_ids.append(user.user_id)
                continue
            result.job_ids.append(job_id)
            result.user_ids.append(user.user_id)

        result.users_scheduled = len(result.job_ids)
        logger.info(
            "Schedule tick complete",
            extra={
                "users_scheduled": result.users_scheduled,
                "users_failed": len(result.failed_user_ids),
                "tick_at": now.isoformat(),
            },
        )
        return result
