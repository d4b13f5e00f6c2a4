"""
API tests: manual call trigger, queue endpoints, vendor webhooks.

The app runs its real lifespan against the test database and the mock
provider, inside the test's event loop.
"""

import logging
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from callengine.calls.repository import CallRecordRepository
from callengine.main import create_app
from callengine.queue.client import QueueClient
from callengine.queue.types import JobKind
from callengine.shared.database import DatabaseManager
from callengine.telephony.adapters.mock import MockCallProvider
from callengine.telephony.interface import CallStatus
from callengine.telephony.webhooks.handler import WebhookReconciler
from conftest import add_call, add_user, get_call, sign, webhook_body


@pytest_asyncio.fixture
async def app(db: DatabaseManager, provider: MockCallProvider) -> AsyncGenerator[FastAPI, None]:
    # The lifespan installs the JSON handler on the root logger; keep pytest's
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    application = create_app(db=db, provider=provider)
    try:
        async with application.router.lifespan_context(application):
            yield application
    finally:
        root.handlers = handlers
        root.setLevel(level)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _app_queue(app: FastAPI) -> QueueClient:
    return app.state.queue


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}


class TestInitiateCall:
    @pytest.mark.asyncio
    async def test_requires_user_header(self, client: AsyncClient) -> None:
        resp = await client.post("/api/calls/initiate")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_user(self, client: AsyncClient) -> None:
        resp = await client.post("/api/calls/initiate", headers={"X-User-Id": "ghost"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_user_without_phone(self, db: DatabaseManager, client: AsyncClient) -> None:
        await add_user(db, "u-1", phone=None)

        resp = await client.post("/api/calls/initiate", headers={"X-User-Id": "u-1"})

        assert resp.status_code == 400
        assert "Phone number" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_places_call(
        self,
        db: DatabaseManager,
        client: AsyncClient,
        provider: MockCallProvider,
    ) -> None:
        await add_user(db, "u-1", local_tz="Asia/Kolkata")

        resp = await client.post("/api/calls/initiate", headers={"X-User-Id": "u-1"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["vendor_call_id"] == "MOCK_CALL_000001"
        assert (await get_call(db, body["call_id"])).status == CallStatus.RINGING
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_second_call_same_day_is_skipped(
        self,
        db: DatabaseManager,
        client: AsyncClient,
        provider: MockCallProvider,
    ) -> None:
        await add_user(db, "u-1")

        await client.post("/api/calls/initiate", headers={"X-User-Id": "u-1"})
        resp = await client.post("/api/calls/initiate", headers={"X-User-Id": "u-1"})

        assert resp.status_code == 200
        assert resp.json()["skipped"] is True
        assert resp.json()["reason"] == "duplicate"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_vendor_failure_is_reported_in_body(
        self,
        db: DatabaseManager,
        client: AsyncClient,
        provider: MockCallProvider,
    ) -> None:
        await add_user(db, "u-1")
        provider.fail_with = "Vapi API error: 400 - bad number"

        resp = await client.post("/api/calls/initiate", headers={"X-User-Id": "u-1"})

        assert resp.status_code == 200
        assert resp.json()["success"] is False
        assert resp.json()["error"] == "Vapi API error: 400 - bad number"

    @pytest.mark.asyncio
    async def test_provider_unreachable_returns_failure(
        self,
        db: DatabaseManager,
        client: AsyncClient,
        provider: MockCallProvider,
    ) -> None:
        await add_user(db, "u-1")
        provider.raise_exc = httpx.ConnectError("connection refused")

        resp = await client.post("/api/calls/initiate", headers={"X-User-Id": "u-1"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "Call provider unavailable"
        async with db.session() as session:
            records = await CallRecordRepository(session).list_for_user("u-1")
        assert [r.status for r in records] == [CallStatus.FAILED]


class TestQueueEndpoints:
    @pytest.mark.asyncio
    async def test_trigger_enqueues_manual_tick(self, app: FastAPI, client: AsyncClient) -> None:
        resp = await client.post("/api/queue/trigger", headers={"X-User-Id": "admin"})

        assert resp.status_code == 200
        job_id = resp.json()["job_id"]
        job = await _app_queue(app).get_job(job_id)
        assert job is not None
        assert job.kind == JobKind.SCHEDULE_TICK
        assert job.payload == {"trigger": "manual", "manual": True}
        assert job.max_attempts == 1

    @pytest.mark.asyncio
    async def test_trigger_requires_user(self, client: AsyncClient) -> None:
        resp = await client.post("/api/queue/trigger")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_trigger_with_closed_queue(self, app: FastAPI, client: AsyncClient) -> None:
        await _app_queue(app).close()

        resp = await client.post("/api/queue/trigger", headers={"X-User-Id": "admin"})

        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_status_counts(self, app: FastAPI, client: AsyncClient) -> None:
        queue = _app_queue(app)
        await queue.add(JobKind.PROCESS_USER_CALL, {"user_id": "u-1"})
        await queue.add(
            JobKind.PROCESS_USER_CALL,
            {"user_id": "u-2"},
            queue.default_options.with_changes(delay_ms=60_000),
        )
        await queue.add_recurring("tick", JobKind.SCHEDULE_TICK, every_seconds=300)

        resp = await client.get("/api/queue/status", headers={"X-User-Id": "admin"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["health"] == "healthy"
        assert body["name"] == queue.name
        assert body["waiting"] == 1
        assert body["delayed"] == 1
        assert body["active"] == 0
        assert [r["key"] for r in body["recurring"]] == ["tick"]


class TestCallWebhook:
    @pytest.mark.asyncio
    async def test_missing_signature(self, client: AsyncClient) -> None:
        resp = await client.post("/webhooks/call", content=webhook_body({"call_id": "v-1"}))

        assert resp.status_code == 401
        assert resp.json()["success"] is False

    @pytest.mark.asyncio
    async def test_bad_signature(self, client: AsyncClient) -> None:
        body = webhook_body({"call_id": "v-1", "status": "completed"})
        resp = await client.post(
            "/webhooks/call",
            content=body,
            headers={"X-Webhook-Signature": sign(body, "wrong")},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client: AsyncClient) -> None:
        body = webhook_body({"status": "completed"})
        resp = await client.post(
            "/webhooks/call",
            content=body,
            headers={"X-Webhook-Signature": sign(body)},
        )

        assert resp.status_code == 400
        assert resp.json()["success"] is False

    @pytest.mark.asyncio
    async def test_unknown_call_is_acknowledged(self, client: AsyncClient) -> None:
        body = webhook_body({"call_id": "v-unknown", "status": "completed"})
        resp = await client.post(
            "/webhooks/call",
            content=body,
            headers={"X-Webhook-Signature": sign(body)},
        )

        assert resp.status_code == 200
        assert resp.json() == {"success": False, "error": "Call not found"}

    @pytest.mark.asyncio
    async def test_status_update(self, db: DatabaseManager, app: FastAPI, client: AsyncClient) -> None:
        call_id = await add_call(db, "u-1", CallStatus.RINGING, vendor_call_id="v-1")
        body = webhook_body({"call_id": "v-1", "status": "busy"})

        resp = await client.post(
            "/webhooks/call",
            content=body,
            headers={"X-Webhook-Signature": f"sha256={sign(body)}"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["call_id"] == call_id
        assert data["status"] == "busy"
        assert data["retry_scheduled"] is True
        assert (await get_call(db, call_id)).status == CallStatus.BUSY

        jobs = await _app_queue(app).list_jobs(kind=JobKind.PROCESS_USER_CALL)
        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_reconcile_error_returns_500(
        self,
        db: DatabaseManager,
        client: AsyncClient,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken(self, payload, raw_payload):
            raise RuntimeError("db unavailable")

        monkeypatch.setattr(WebhookReconciler, "reconcile", broken)
        body = webhook_body({"call_id": "v-1", "status": "completed"})

        resp = await client.post(
            "/webhooks/call",
            content=body,
            headers={"X-Webhook-Signature": sign(body)},
        )

        assert resp.status_code == 500
