"""
Durable job queue on top of the application database.

Jobs are rows in queue_jobs; any number of worker processes may claim from
the same table. Claims are atomic (conditional UPDATE on status) and leased
(locked_until), so a crashed worker's jobs become claimable again once the
lease expires.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from callengine.config import Settings, get_settings
from callengine.queue.models import QueueJob, RecurringJob
from callengine.queue.types import (
    BackoffType,
    Job,
    JobKind,
    JobOptions,
    JobStatus,
    QueueError,
    RecurringJobInfo,
    backoff_seconds,
)
from callengine.shared.database import DatabaseManager, utcnow
from callengine.shared.logging import get_logger

logger = get_logger(__name__)


def _advisory_lock_id(key: str) -> int:
    """Derive a stable signed bigint lock id from an arbitrary string key."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    # Use 63-bit positive space to avoid signed bigint surprises.
    return int.from_bytes(digest, "big", signed=False) & 0x7FFF_FFFF_FFFF_FFFF


def next_aligned_run(now: datetime, every_seconds: int) -> datetime:
    """First interval boundary strictly after `now` (epoch aligned, like */5 cron)."""
    epoch = int(now.timestamp())
    boundary = (epoch // every_seconds + 1) * every_seconds
    return datetime.fromtimestamp(boundary, tz=timezone.utc)


def _to_job(row: QueueJob) -> Job:
    return Job(
        id=row.id,
        queue=row.queue,
        kind=JobKind(row.kind),
        payload=dict(row.payload or {}),
        status=JobStatus(row.status),
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        run_at=row.run_at,
        created_at=row.created_at,
        finished_at=row.finished_at,
        last_error=row.last_error,
        result=row.result,
    )


class QueueClient:
    """Client for one named queue.

    Constructed and opened by the process entry point (API lifespan or worker)
    and passed explicitly to the components that enqueue or consume jobs.
    """

    def __init__(
        self,
        db: DatabaseManager,
        queue_name: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._db = db
        self.name = queue_name or self._settings.queue_name
        self.default_options = JobOptions.defaults(self._settings)
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        """Verify connectivity; must be called before the client is used."""
        async with self._db.session() as session:
            await session.execute(text("SELECT 1"))
        self._open = True
        logger.info("Queue client opened", extra={"queue": self.name})

    async def close(self) -> None:
        self._open = False
        logger.info("Queue client closed", extra={"queue": self.name})

    def _ensure_open(self) -> None:
        if not self._open:
            raise QueueError(f"Queue client for {self.name!r} is not open")

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    async def add(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        options: JobOptions | None = None,
        now: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> str:
        """Enqueue a job and return its id.

        With `session` the job is written in the caller's transaction and is
        committed (or rolled back) with it.

        Raises:
            QueueError: the client is closed or the insert failed.
        """
        self._ensure_open()
        if session is not None:
            return await self._add(session, kind, payload, options, now)
        async with self._db.session() as own_session:
            return await self._add(own_session, kind, payload, options, now)

    async def _add(
        self,
        session: AsyncSession,
        kind: JobKind,
        payload: dict[str, Any],
        options: JobOptions | None,
        now: datetime | None,
    ) -> str:
        opts = options or self.default_options
        now = now or utcnow()
        job = QueueJob(
            queue=self.name,
            kind=JobKind(kind).value,
            payload=payload,
            status=JobStatus.WAITING.value,
            attempts_made=0,
            max_attempts=max(opts.attempts, 1),
            backoff_type=opts.backoff_type.value,
            backoff_delay_ms=opts.backoff_delay_ms,
            remove_on_complete=opts.remove_on_complete,
            remove_on_fail=opts.remove_on_fail,
            run_at=now + timedelta(milliseconds=opts.delay_ms),
            created_at=now,
        )
        session.add(job)
        try:
            await session.flush()
        except Exception as exc:
            raise QueueError(f"Failed to enqueue {kind} job: {exc}") from exc

        logger.debug(
            "Job enqueued",
            extra={"queue": self.name, "job_id": job.id, "kind": job.kind, "delay_ms": opts.delay_ms},
        )
        return job.id

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def claim(
        self,
        kind: JobKind,
        worker_id: str,
        limit: int = 1,
        exclusive: bool = False,
        now: datetime | None = None,
    ) -> list[Job]:
        """Atomically lease up to `limit` due jobs of one kind.

        With exclusive=True at most one job of this kind is active across every
        worker sharing the database: the claim refuses while another unexpired
        lease exists.
        """
        self._ensure_open()
        if limit <= 0:
            return []
        now = now or utcnow()
        lease_until = now + timedelta(seconds=self._settings.queue_lease_seconds)

        async with self._db.session() as session:
            if exclusive:
                if self._db.dialect_name == "postgresql":
                    # Serialize exclusive claims across processes until commit
                    await session.execute(
                        text("SELECT pg_advisory_xact_lock(:lock_id)"),
                        {"lock_id": _advisory_lock_id(f"{self.name}:{kind.value}")},
                    )
                busy = await session.execute(
                    select(QueueJob.id)
                    .where(
                        QueueJob.queue == self.name,
                        QueueJob.kind == kind.value,
                        QueueJob.status == JobStatus.ACTIVE.value,
                        QueueJob.locked_until > now,
                    )
                    .limit(1)
                )
                if busy.first() is not None:
                    return []
                limit = 1

            candidates = await session.execute(
                select(QueueJob.id)
                .where(
                    QueueJob.queue == self.name,
                    QueueJob.kind == kind.value,
                    QueueJob.status == JobStatus.WAITING.value,
                    QueueJob.run_at <= now,
                )
                .order_by(QueueJob.run_at, QueueJob.created_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            job_ids = list(candidates.scalars().all())

            claimed: list[Job] = []
            for job_id in job_ids:
                result = await session.execute(
                    update(QueueJob)
                    .where(QueueJob.id == job_id, QueueJob.status == JobStatus.WAITING.value)
                    .values(
                        status=JobStatus.ACTIVE.value,
                        locked_by=worker_id,
                        locked_until=lease_until,
                        attempts_made=QueueJob.attempts_made + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Another worker won the race for this row
                    continue
                row = await session.get(QueueJob, job_id, populate_existing=True)
                if row is not None:
                    claimed.append(_to_job(row))

        return claimed

    async def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Mark an active job completed and trim completed history."""
        now = now or utcnow()
        async with self._db.session() as session:
            row = await session.get(QueueJob, job_id)
            if row is None:
                raise QueueError(f"Job {job_id} not found")
            row.status = JobStatus.COMPLETED.value
            row.result = result
            row.finished_at = now
            row.locked_by = None
            row.locked_until = None
            await session.flush()
            await self._trim(session, row.kind, JobStatus.COMPLETED, row.remove_on_complete)

    async def fail(self, job_id: str, error: str, now: datetime | None = None) -> bool:
        """Record a failed attempt.

        Returns:
            True if the job was rescheduled for another attempt, False if it
            is now permanently failed.
        """
        now = now or utcnow()
        async with self._db.session() as session:
            row = await session.get(QueueJob, job_id)
            if row is None:
                raise QueueError(f"Job {job_id} not found")

            row.last_error = error[:4000]
            row.locked_by = None
            row.locked_until = None

            if row.attempts_made < row.max_attempts:
                delay = backoff_seconds(
                    BackoffType(row.backoff_type),
                    row.backoff_delay_ms,
                    row.attempts_made,
                )
                row.status = JobStatus.WAITING.value
                row.run_at = now + timedelta(seconds=delay)
                await session.flush()
                logger.warning(
                    "Job attempt failed; retry scheduled",
                    extra={
                        "queue": self.name,
                        "job_id": job_id,
                        "kind": row.kind,
                        "attempts_made": row.attempts_made,
                        "max_attempts": row.max_attempts,
                        "retry_in_seconds": delay,
                        "error": error,
                    },
                )
                return True

            row.status = JobStatus.FAILED.value
            row.finished_at = now
            await session.flush()
            logger.error(
                "Job failed permanently",
                extra={
                    "queue": self.name,
                    "job_id": job_id,
                    "kind": row.kind,
                    "attempts_made": row.attempts_made,
                    "error": error,
                },
            )
            await self._trim(session, row.kind, JobStatus.FAILED, row.remove_on_fail)
            return False

    async def requeue_stalled(self, now: datetime | None = None) -> int:
        """Release active jobs whose lease expired (worker crashed or hung).

        A stalled attempt counts as an attempt: jobs with attempts left go back
        to waiting, the rest are failed.
        """
        self._ensure_open()
        now = now or utcnow()
        async with self._db.session() as session:
            stalled = await session.execute(
                select(QueueJob)
                .where(
                    QueueJob.queue == self.name,
                    QueueJob.status == JobStatus.ACTIVE.value,
                    QueueJob.locked_until < now,
                )
                .with_for_update(skip_locked=True)
            )
            rows: Sequence[QueueJob] = stalled.scalars().all()

            requeued = failed = 0
            for row in rows:
                row.locked_by = None
                row.locked_until = None
                row.last_error = "job stalled (lease expired)"
                if row.attempts_made < row.max_attempts:
                    row.status = JobStatus.WAITING.value
                    row.run_at = now
                    requeued += 1
                else:
                    row.status = JobStatus.FAILED.value
                    row.finished_at = now
                    failed += 1
            await session.flush()

        if rows:
            logger.warning(
                "Recovered stalled jobs",
                extra={"queue": self.name, "requeued": requeued, "failed": failed},
            )
        return requeued + failed

    async def _trim(self, session: AsyncSession, kind: str, status: JobStatus, keep: int) -> None:
        """Keep only the `keep` most recently finished jobs of one kind and outcome."""
        keep_ids = (
            select(QueueJob.id)
            .where(
                QueueJob.queue == self.name,
                QueueJob.kind == kind,
                QueueJob.status == status.value,
            )
            .order_by(QueueJob.finished_at.desc(), QueueJob.id.desc())
            .limit(max(keep, 0))
        )
        await session.execute(
            delete(QueueJob)
            .where(
                QueueJob.queue == self.name,
                QueueJob.kind == kind,
                QueueJob.status == status.value,
                QueueJob.id.not_in(keep_ids),
            )
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        async with self._db.session() as session:
            row = await session.get(QueueJob, job_id)
            return _to_job(row) if row is not None else None

    async def list_jobs(
        self,
        kind: JobKind | None = None,
        status: JobStatus | None = None,
    ) -> list[Job]:
        stmt = select(QueueJob).where(QueueJob.queue == self.name)
        if kind is not None:
            stmt = stmt.where(QueueJob.kind == kind.value)
        if status is not None:
            stmt = stmt.where(QueueJob.status == status.value)
        stmt = stmt.order_by(QueueJob.created_at, QueueJob.id)
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return [_to_job(row) for row in result.scalars().all()]

    async def get_counts(self, now: datetime | None = None) -> dict[str, int]:
        """Job counts by state; `delayed` are waiting jobs not yet due."""
        now = now or utcnow()
        counts = {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}
        async with self._db.session() as session:
            result = await session.execute(
                select(QueueJob.status, func.count())
                .where(QueueJob.queue == self.name)
                .group_by(QueueJob.status)
            )
            for status, count in result.all():
                counts[status] = int(count)

            delayed = await session.execute(
                select(func.count())
                .select_from(QueueJob)
                .where(
                    QueueJob.queue == self.name,
                    QueueJob.status == JobStatus.WAITING.value,
                    QueueJob.run_at > now,
                )
            )
            counts["delayed"] = int(delayed.scalar_one())
            counts["waiting"] -= counts["delayed"]
        return counts

    # ------------------------------------------------------------------
    # Recurring jobs
    # ------------------------------------------------------------------

    async def get_recurring_jobs(self) -> list[RecurringJobInfo]:
        async with self._db.session() as session:
            result = await session.execute(
                select(RecurringJob)
                .where(RecurringJob.queue == self.name)
                .order_by(RecurringJob.key)
            )
            return [
                RecurringJobInfo(
                    key=row.key,
                    kind=JobKind(row.kind),
                    every_seconds=row.every_seconds,
                    next_run_at=row.next_run_at,
                    payload=dict(row.payload or {}),
                    options=dict(row.options or {}),
                )
                for row in result.scalars().all()
            ]

    async def remove_recurring(self, key: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(RecurringJob).where(
                    RecurringJob.queue == self.name,
                    RecurringJob.key == key,
                )
            )
            return bool(result.rowcount)

    async def clear_recurring(self) -> int:
        """Remove every recurring registration of this queue."""
        async with self._db.session() as session:
            result = await session.execute(
                delete(RecurringJob).where(RecurringJob.queue == self.name)
            )
            removed = int(result.rowcount or 0)
        if removed:
            logger.info("Removed recurring jobs", extra={"queue": self.name, "count": removed})
        return removed

    async def add_recurring(
        self,
        key: str,
        kind: JobKind,
        every_seconds: int,
        payload: dict[str, Any] | None = None,
        options: JobOptions | None = None,
        now: datetime | None = None,
    ) -> RecurringJobInfo:
        """Register (or replace) a recurring job aligned to interval boundaries."""
        self._ensure_open()
        if every_seconds <= 0:
            raise QueueError("every_seconds must be positive")
        now = now or utcnow()
        next_run_at = next_aligned_run(now, every_seconds)
        stored_options = (options or self.default_options).to_dict()

        async with self._db.session() as session:
            row = await session.get(RecurringJob, key)
            if row is None:
                row = RecurringJob(key=key, queue=self.name, created_at=now)
                session.add(row)
            row.queue = self.name
            row.kind = JobKind(kind).value
            row.payload = payload or {}
            row.every_seconds = every_seconds
            row.options = stored_options
            row.next_run_at = next_run_at
            await session.flush()

        logger.info(
            "Recurring job registered",
            extra={
                "queue": self.name,
                "key": key,
                "kind": JobKind(kind).value,
                "every_seconds": every_seconds,
                "next_run_at": next_run_at.isoformat(),
            },
        )
        return RecurringJobInfo(
            key=key,
            kind=JobKind(kind),
            every_seconds=every_seconds,
            next_run_at=next_run_at,
            payload=payload or {},
            options=stored_options,
        )

    async def enqueue_due_recurring(self, now: datetime | None = None) -> list[str]:
        """Enqueue one job for every recurring registration that is due.

        Safe to call from every worker: the registration's next_run_at is
        advanced with a compare-and-set, so only one caller enqueues per slot.
        """
        self._ensure_open()
        now = now or utcnow()
        job_ids: list[str] = []

        async with self._db.session() as session:
            result = await session.execute(
                select(RecurringJob).where(
                    RecurringJob.queue == self.name,
                    RecurringJob.next_run_at <= now,
                )
            )
            due = [
                (
                    row.key,
                    row.kind,
                    dict(row.payload or {}),
                    JobOptions.from_dict(row.options or {}, self.default_options),
                    row.every_seconds,
                    row.next_run_at,
                )
                for row in result.scalars().all()
            ]

            for key, kind, payload, options, every_seconds, scheduled_for in due:
                advanced = await session.execute(
                    update(RecurringJob)
                    .where(
                        RecurringJob.key == key,
                        RecurringJob.next_run_at == scheduled_for,
                    )
                    .values(next_run_at=next_aligned_run(now, every_seconds))
                    .execution_options(synchronize_session=False)
                )
                if advanced.rowcount != 1:
                    continue
                job_payload = {**payload, "scheduled_for": scheduled_for.isoformat()}
                job_ids.append(await self._add(session, JobKind(kind), job_payload, options, now))

        return job_ids
