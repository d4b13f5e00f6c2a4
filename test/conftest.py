"""
Pytest configuration and shared fixtures.

Every test gets its own file-backed SQLite database (aiosqlite) so that
separate sessions, as used by the dispatcher and the queue, see each
other's commits.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from callengine.calls.dispatcher import CallDispatcher
from callengine.calls.models import CallRecord
from callengine.calls.retry import RetryPolicy
from callengine.calls.scheduler import EligibilityScheduler
from callengine.config import Settings
from callengine.queue.client import QueueClient
from callengine.shared.database import DatabaseManager
from callengine.telephony.adapters.mock import MockCallProvider
from callengine.telephony.interface import CallStatus
from callengine.telephony.webhooks.handler import WebhookReconciler
from callengine.users.models import UserProfile

WEBHOOK_SECRET = "test-webhook-secret"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def webhook_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        app_env="dev",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'callengine.db'}",
        default_timezone="UTC",
        default_call_time="21:00:00",
        scheduler_tick_seconds=300,
        call_time_window_minutes=5,
        queue_name="daily-calls-test",
        queue_concurrency=5,
        queue_poll_interval_seconds=0.05,
        queue_lease_seconds=120,
        max_call_retries=2,
        retry_delay_minutes=30,
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncGenerator[DatabaseManager, None]:
    manager = DatabaseManager(settings.database_url)
    await manager.create_all()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def queue(db: DatabaseManager, settings: Settings) -> AsyncGenerator[QueueClient, None]:
    client = QueueClient(db, settings=settings)
    await client.open()
    yield client
    await client.close()


@pytest.fixture
def provider() -> MockCallProvider:
    return MockCallProvider(agent_id="agent-test", webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def retry_policy(queue: QueueClient, settings: Settings) -> RetryPolicy:
    return RetryPolicy(queue, settings=settings)


@pytest.fixture
def dispatcher(
    db: DatabaseManager,
    provider: MockCallProvider,
    retry_policy: RetryPolicy,
    settings: Settings,
) -> CallDispatcher:
    return CallDispatcher(db, provider, retry_policy, settings=settings)


@pytest.fixture
def scheduler(db: DatabaseManager, queue: QueueClient, settings: Settings) -> EligibilityScheduler:
    return EligibilityScheduler(db, queue, settings=settings)


@pytest.fixture
def reconciler(
    db: DatabaseManager,
    provider: MockCallProvider,
    retry_policy: RetryPolicy,
) -> WebhookReconciler:
    return WebhookReconciler(db, provider, retry_policy)


async def add_user(
    db: DatabaseManager,
    user_id: str,
    phone: str | None = "+15550001111",
    local_tz: str | None = None,
    call_time: str | None = None,
    call_enabled: bool = True,
    name: str | None = "Test User",
) -> None:
    async with db.session() as session:
        session.add(
            UserProfile(
                id=user_id,
                phone=phone,
                name=name,
                local_tz=local_tz,
                call_time=call_time,
                call_enabled=call_enabled,
            )
        )


async def add_call(
    db: DatabaseManager,
    user_id: str,
    status: CallStatus,
    created_at: datetime | None = None,
    vendor_call_id: str | None = None,
    retry_count: int = 0,
    to_number: str = "+15550001111",
) -> str:
    async with db.session() as session:
        record = CallRecord(
            user_id=user_id,
            to_number=to_number,
            agent_id="agent-test",
            vendor="mock",
            vendor_call_id=vendor_call_id,
            vendor_payload={},
            status=status,
            retry_count=retry_count,
            created_at=created_at or datetime.now(timezone.utc),
        )
        session.add(record)
        await session.flush()
        return record.id


async def get_call(db: DatabaseManager, call_id: str) -> CallRecord:
    async with db.session() as session:
        record = await session.get(CallRecord, call_id)
        assert record is not None
        return record
