"""
FastAPI dependencies resolving the components built in the app lifespan.
"""

from fastapi import Request

from callengine.calls.dispatcher import CallDispatcher
from callengine.queue.client import QueueClient
from callengine.shared.database import DatabaseManager
from callengine.telephony.webhooks.handler import WebhookReconciler


def get_database_manager(request: Request) -> DatabaseManager:
    return request.app.state.db


def get_queue(request: Request) -> QueueClient:
    return request.app.state.queue


def get_dispatcher(request: Request) -> CallDispatcher:
    return request.app.state.dispatcher


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler
