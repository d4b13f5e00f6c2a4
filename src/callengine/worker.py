"""
Queue worker process entry point.

Usage:
    python -m callengine.worker
    callengine-worker
"""

from __future__ import annotations

import asyncio
import signal
import sys

from callengine.calls.dispatcher import CallDispatcher
from callengine.calls.retry import RetryPolicy
from callengine.calls.scheduler import EligibilityScheduler
from callengine.config import get_settings
from callengine.queue.client import QueueClient
from callengine.queue.jobs import DailyCallJobs, build_worker_pool, register_schedule_tick
from callengine.shared.database import DatabaseManager
from callengine.shared.logging import get_logger, setup_logging
from callengine.telephony.factory import create_call_provider, validate_provider_config
from callengine.telephony.interface import ProviderConfigurationError

logger = get_logger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    """Run the worker until stop_event is set (SIGINT/SIGTERM by default)."""
    settings = get_settings()
    logger.info(
        "Queue worker starting",
        extra={
            "env": settings.app_env,
            "queue": settings.queue_name,
            "concurrency": settings.queue_concurrency,
            "tick_seconds": settings.scheduler_tick_seconds,
        },
    )

    missing = validate_provider_config()
    if missing:
        logger.warning("Call provider configuration incomplete", extra={"missing": missing})

    # Fail fast on missing credentials before touching the database
    provider = create_call_provider()

    db = DatabaseManager()
    if settings.db_create_tables:
        await db.create_all()

    queue = QueueClient(db, settings=settings)
    await queue.open()

    retry_policy = RetryPolicy(queue, settings=settings)
    jobs = DailyCallJobs(
        scheduler=EligibilityScheduler(db, queue, settings=settings),
        dispatcher=CallDispatcher(db, provider, retry_policy, settings=settings),
    )
    pool = build_worker_pool(queue, jobs, settings=settings)

    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

    try:
        await register_schedule_tick(queue, settings=settings)
        await pool.start()
        logger.info("Worker started; waiting for jobs", extra={"worker_id": pool.worker_id})
        await stop_event.wait()
    finally:
        logger.info("Worker shutting down")
        await pool.stop(timeout=settings.queue_lease_seconds)
        await provider.close()
        await queue.close()
        await db.close()
        logger.info("Worker stopped")


def main() -> None:
    setup_logging()
    try:
        asyncio.run(run_worker())
    except ProviderConfigurationError as exc:
        logger.error("Cannot start worker: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
