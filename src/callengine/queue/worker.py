"""
Worker pool consuming the durable job queue.

Each registered job kind gets its own polling loop bounded by its own
concurrency. A maintenance loop enqueues due recurring jobs and recovers
jobs whose lease expired.
"""

from __future__ import annotations

import asyncio
import os
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from uuid import uuid4

from callengine.config import Settings, get_settings
from callengine.queue.client import QueueClient
from callengine.queue.types import Job, JobKind
from callengine.shared.logging import correlation_id_var, get_logger

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[dict[str, Any] | None]]


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass
class _Registration:
    kind: JobKind
    handler: JobHandler
    concurrency: int
    exclusive: bool


class WorkerPool:
    """Runs job handlers with per-kind concurrency limits."""

    def __init__(
        self,
        queue: QueueClient,
        worker_id: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._queue = queue
        self.worker_id = worker_id or default_worker_id()
        self._poll_interval = self._settings.queue_poll_interval_seconds
        self._registrations: dict[JobKind, _Registration] = {}
        self._loops: list[asyncio.Task[None]] = []
        self._active: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()
        self._running = False

    def register(
        self,
        kind: JobKind,
        handler: JobHandler,
        concurrency: int = 1,
        exclusive: bool = False,
    ) -> None:
        """Register a handler.

        Args:
            kind: Job kind to consume.
            handler: Coroutine receiving the Job; its return value is stored as the job result.
            concurrency: Max jobs of this kind running at once in this process.
            exclusive: At most one job of this kind active across all workers.
        """
        if self._running:
            raise RuntimeError("Cannot register handlers on a running worker pool")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._registrations[kind] = _Registration(
            kind=kind,
            handler=handler,
            concurrency=1 if exclusive else concurrency,
            exclusive=exclusive,
        )
        logger.info(
            "Registered job handler",
            extra={"kind": kind.value, "concurrency": concurrency, "exclusive": exclusive},
        )

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def start(self) -> None:
        if self._running:
            logger.warning("Worker pool already running")
            return
        self._running = True
        self._stopping.clear()
        for registration in self._registrations.values():
            self._loops.append(asyncio.create_task(self._consume(registration)))
        self._loops.append(asyncio.create_task(self._maintenance()))
        logger.info(
            "Worker pool started",
            extra={
                "worker_id": self.worker_id,
                "queue": self._queue.name,
                "kinds": [k.value for k in self._registrations],
            },
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop polling and wait for in-flight jobs to finish."""
        if not self._running:
            return
        self._stopping.set()
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        if self._active:
            logger.info("Waiting for active jobs", extra={"active_jobs": len(self._active)})
            done, pending = await asyncio.wait(set(self._active), timeout=timeout)
            for task in pending:
                # Leases expire and another worker picks these jobs up
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self._running = False
        logger.info("Worker pool stopped", extra={"worker_id": self.worker_id})

    async def run_once(self, kind: JobKind) -> int:
        """Claim and process due jobs of one kind inline; returns how many ran."""
        registration = self._registrations[kind]
        jobs = await self._queue.claim(
            kind,
            self.worker_id,
            limit=registration.concurrency,
            exclusive=registration.exclusive,
        )
        await asyncio.gather(*(self._process(registration, job) for job in jobs))
        return len(jobs)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _consume(self, registration: _Registration) -> None:
        semaphore = asyncio.Semaphore(registration.concurrency)
        in_flight: set[asyncio.Task[None]] = set()

        while not self._stopping.is_set():
            free = registration.concurrency - len(in_flight)
            jobs: list[Job] = []
            if free > 0:
                try:
                    jobs = await self._queue.claim(
                        registration.kind,
                        self.worker_id,
                        limit=free,
                        exclusive=registration.exclusive,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Job claim failed", extra={"kind": registration.kind.value})

            for job in jobs:
                await semaphore.acquire()
                task = asyncio.create_task(self._run_with_slot(semaphore, registration, job))
                in_flight.add(task)
                self._active.add(task)
                task.add_done_callback(in_flight.discard)
                task.add_done_callback(self._active.discard)

            if not jobs:
                await self._sleep(self._poll_interval)

    async def _run_with_slot(
        self,
        semaphore: asyncio.Semaphore,
        registration: _Registration,
        job: Job,
    ) -> None:
        try:
            await self._process(registration, job)
        finally:
            semaphore.release()

    async def _process(self, registration: _Registration, job: Job) -> None:
        token = correlation_id_var.set(job.id)
        extra = {
            "job_id": job.id,
            "kind": job.kind.value,
            "attempt": job.attempts_made,
            "max_attempts": job.max_attempts,
        }
        try:
            logger.info("Job started", extra=extra)
            try:
                result = await registration.handler(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Job failed", extra=extra)
                await self._queue.fail(job.id, f"{type(exc).__name__}: {exc}")
                return
            await self._queue.complete(job.id, result)
            logger.info("Job completed", extra=extra)
        finally:
            correlation_id_var.reset(token)

    async def _maintenance(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._queue.enqueue_due_recurring()
                await self._queue.requeue_stalled()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Queue maintenance failed")
            await self._sleep(self._poll_interval)
