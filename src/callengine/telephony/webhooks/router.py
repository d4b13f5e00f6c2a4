"""
FastAPI router for vendor call webhooks.

Vendors retry on non-2xx responses, so only authentication and payload
errors are reported as failures; unknown calls are acknowledged with 200.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from callengine.dependencies import get_reconciler
from callengine.shared.logging import get_logger
from callengine.telephony.interface import WebhookParseError
from callengine.telephony.webhooks.handler import (
    WebhookAuthenticationError,
    WebhookReconciler,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/call")
async def call_webhook(
    request: Request,
    reconciler: Annotated[WebhookReconciler, Depends(get_reconciler)],
) -> JSONResponse:
    """Receive a call status callback from the configured provider."""
    raw_body = await request.body()

    signature = None
    for header in reconciler.signature_headers:
        signature = request.headers.get(header)
        if signature:
            break

    try:
        reconciler.authenticate(raw_body, signature)
    except WebhookAuthenticationError as exc:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"success": False, "error": str(exc)},
        )

    try:
        payload, raw_payload = reconciler.parse(raw_body)
    except WebhookParseError as exc:
        logger.warning("Rejected malformed webhook", extra={"error": str(exc)})
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": str(exc)},
        )

    try:
        result = await reconciler.reconcile(payload, raw_payload)
    except Exception as exc:
        logger.exception(
            "Error processing webhook",
            extra={"vendor_call_id": payload.vendor_call_id},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(exc)},
        )

    return JSONResponse(status_code=status.HTTP_200_OK, content=result.as_response())
