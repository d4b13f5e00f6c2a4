"""
HTTP surface of the call engine: manual triggers, call records and provider webhooks.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from callengine.calls.dispatcher import CallDispatcher
from callengine.calls.retry import RetryPolicy
from callengine.calls.router import router as calls_router
from callengine.config import get_settings
from callengine.queue.client import QueueClient
from callengine.queue.types import QueueError
from callengine.shared.database import DatabaseManager
from callengine.shared.exceptions import NotFoundError, ValidationError
from callengine.shared.logging import get_logger, setup_logging
from callengine.telephony.factory import create_call_provider
from callengine.telephony.interface import CallProvider
from callengine.telephony.webhooks.handler import WebhookReconciler
from callengine.telephony.webhooks.router import router as webhooks_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Components injected through create_app() are used as-is and left open;
    everything else is built here and closed on shutdown.
    """
    setup_logging()
    settings = get_settings()
    logger.info("Call engine API starting", extra={"env": settings.app_env})

    owns_db = app.state.db is None
    owns_provider = app.state.provider is None

    db: DatabaseManager = app.state.db or DatabaseManager()
    if settings.db_create_tables:
        await db.create_all()

    provider: CallProvider = app.state.provider or create_call_provider()

    queue = QueueClient(db, settings=settings)
    await queue.open()

    retry_policy = RetryPolicy(queue, settings=settings)
    app.state.db = db
    app.state.provider = provider
    app.state.queue = queue
    app.state.dispatcher = CallDispatcher(db, provider, retry_policy, settings=settings)
    app.state.reconciler = WebhookReconciler(db, provider, retry_policy)

    logger.info(
        "Call engine API ready",
        extra={"provider": provider.name, "queue": queue.name},
    )

    yield

    logger.info("Call engine API stopping")
    await queue.close()
    if owns_provider:
        await provider.close()
    if owns_db:
        await db.close()
    logger.info("Call engine API stopped")


def create_app(
    db: DatabaseManager | None = None,
    provider: CallProvider | None = None,
) -> FastAPI:
    """Build the API; db and provider may be injected (tests)."""
    settings = get_settings()

    app = FastAPI(
        title="Call Engine API",
        description="Daily outbound call orchestration and retry engine",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.db = db
    app.state.provider = provider

    # Domain errors -> HTTP status
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(QueueError)
    async def _queue_unavailable(_: Request, exc: QueueError) -> JSONResponse:
        logger.error("Queue unavailable", extra={"error": str(exc)})
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(_: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": "invalid request", "problems": problems},
        )

    app.include_router(calls_router)
    app.include_router(webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
