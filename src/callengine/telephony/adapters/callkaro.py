"""
CallKaro call provider adapter.

Outbound: POST {base}/call/outbound with an X-API-KEY header.
Webhooks carry call_id, status, transcript, recording_url, duration,
metadata and timestamp at the top level.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from callengine.shared.logging import mask_phone
from callengine.telephony.config import TelephonyConfig
from callengine.telephony.interface import (
    CallInitiationResult,
    CallProvider,
    CallStatus,
    CallWebhookPayload,
    ProviderConfigurationError,
    WebhookParseError,
    map_status,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

CALLKARO_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.QUEUED,
    "initiated": CallStatus.RINGING,
    "ringing": CallStatus.RINGING,
    "in_progress": CallStatus.IN_PROGRESS,
    "in-progress": CallStatus.IN_PROGRESS,
    "answered": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "ended": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
    "no_answer": CallStatus.NO_ANSWER,
    "no-answer": CallStatus.NO_ANSWER,
    "busy": CallStatus.BUSY,
}


class CallKaroProvider(CallProvider):
    """CallKaro voice agent adapter (httpx.AsyncClient)."""

    name = "callkaro"
    signature_header = "X-CallKaro-Signature"

    def __init__(
        self,
        config: TelephonyConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.callkaro_api_key:
            raise ProviderConfigurationError(
                "CallKaro API key is not configured",
                error_code="MISSING_API_KEY",
            )
        if not config.callkaro_agent_id:
            raise ProviderConfigurationError(
                "CallKaro agent id is not configured",
                error_code="MISSING_AGENT_ID",
            )
        super().__init__(
            webhook_secret=config.callkaro_webhook_secret,
            allow_unsigned_webhooks=config.allow_unsigned_webhooks,
        )
        self._config = config
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def agent_id(self) -> str:
        return self._config.callkaro_agent_id

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.call_timeout_seconds)
            )
        return self._http_client

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def initiate_call(
        self,
        to_number: str,
        agent_id: str,
        metadata: dict[str, Any],
    ) -> CallInitiationResult:
        client = self._get_client()
        url = f"{self._config.callkaro_base_url.rstrip('/')}/call/outbound"

        logger.info(
            "Initiating CallKaro call",
            extra={"to": mask_phone(to_number), "call_id": metadata.get("call_id")},
        )

        # Transport errors (timeouts, connection failures) propagate to the caller
        response = await client.post(
            url,
            json={"to_number": to_number, "agent_id": agent_id, "metadata": metadata},
            headers={"X-API-KEY": self._config.callkaro_api_key},
        )

        if response.status_code >= 400:
            logger.error(
                "CallKaro call initiation failed",
                extra={
                    "status_code": response.status_code,
                    "body": response.text[:500],
                    "call_id": metadata.get("call_id"),
                },
            )
            return CallInitiationResult.failure(
                f"CallKaro API error: {response.status_code} - {response.text}",
                raw_response={"status_code": response.status_code, "body": response.text},
            )

        try:
            data = response.json()
        except ValueError:
            return CallInitiationResult.failure(
                "CallKaro API returned a non-JSON response",
                raw_response={"status_code": response.status_code, "body": response.text},
            )

        vendor_call_id = data.get("call_id") if isinstance(data, dict) else None
        if not vendor_call_id:
            message = data.get("message") if isinstance(data, dict) else None
            return CallInitiationResult.failure(
                f"CallKaro rejected the call: {message or 'no call id returned'}",
                raw_response=data if isinstance(data, dict) else {"body": data},
            )

        return CallInitiationResult(
            success=True,
            vendor_call_id=str(vendor_call_id),
            status=data.get("status"),
            message=data.get("message"),
            raw_response=data,
        )

    def parse_webhook(self, raw_payload: Any) -> CallWebhookPayload:
        if not isinstance(raw_payload, dict):
            raise WebhookParseError("Webhook payload must be a JSON object")

        call_id = raw_payload.get("call_id")
        if not call_id:
            raise WebhookParseError("Missing call_id in CallKaro webhook")

        raw_status = raw_payload.get("status")
        duration = raw_payload.get("duration")
        metadata = raw_payload.get("metadata")

        return CallWebhookPayload(
            vendor_call_id=str(call_id),
            status=map_status(CALLKARO_STATUS_MAP, raw_status, provider=self.name),
            raw_status=str(raw_status) if raw_status is not None else None,
            transcript=raw_payload.get("transcript") or None,
            recording_url=raw_payload.get("recording_url") or None,
            duration_seconds=float(duration) if isinstance(duration, (int, float)) else None,
            metadata=metadata if isinstance(metadata, dict) else {},
            timestamp=parse_timestamp(raw_payload.get("timestamp")),
        )
