"""
Vapi call provider adapter.

Outbound: POST {base}/call/phone with bearer auth; the call is placed from
the configured phone number id to customer.number.
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

VAPI_STATUS_MAP: dict[str, CallStatus] = {
    "queued": CallStatus.RINGING,
    "ringing": CallStatus.RINGING,
    "in-progress": CallStatus.IN_PROGRESS,
    "forwarding": CallStatus.IN_PROGRESS,
    "ended": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
    "busy": CallStatus.BUSY,
    "no-answer": CallStatus.NO_ANSWER,
}


def _extract_transcript(raw: dict[str, Any]) -> str | None:
    transcript = raw.get("transcript")
    if isinstance(transcript, dict):
        transcript = transcript.get("text")
    if isinstance(transcript, str) and transcript:
        return transcript

    messages = raw.get("messages")
    if isinstance(messages, list):
        lines = [
            str(m.get("content"))
            for m in messages
            if isinstance(m, dict) and m.get("content")
        ]
        if lines:
            return "\n".join(lines)
    return None


def _extract_duration(raw: dict[str, Any]) -> float | None:
    started, ended = raw.get("startedAt"), raw.get("endedAt")
    if not (isinstance(started, str) and isinstance(ended, str) and started and ended):
        return None
    seconds = (parse_timestamp(ended) - parse_timestamp(started)).total_seconds()
    return seconds if seconds >= 0 else None


class VapiProvider(CallProvider):
    """Vapi assistant adapter (httpx.AsyncClient)."""

    name = "vapi"
    signature_header = "X-Vapi-Signature"

    def __init__(
        self,
        config: TelephonyConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.vapi_api_key:
            raise ProviderConfigurationError(
                "Vapi API key is not configured",
                error_code="MISSING_API_KEY",
            )
        if not config.vapi_assistant_id:
            raise ProviderConfigurationError(
                "Vapi assistant id is not configured",
                error_code="MISSING_AGENT_ID",
            )
        super().__init__(
            webhook_secret=config.vapi_webhook_secret,
            allow_unsigned_webhooks=config.allow_unsigned_webhooks,
        )
        self._config = config
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def agent_id(self) -> str:
        return self._config.vapi_assistant_id

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
        url = f"{self._config.vapi_base_url.rstrip('/')}/call/phone"

        body: dict[str, Any] = {
            "assistantId": agent_id or self._config.vapi_assistant_id,
            "customer": {"number": to_number},
            "metadata": metadata,
        }
        if self._config.vapi_phone_number_id:
            body["phoneNumberId"] = self._config.vapi_phone_number_id

        logger.info(
            "Initiating Vapi call",
            extra={"to": mask_phone(to_number), "call_id": metadata.get("call_id")},
        )

        response = await client.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {self._config.vapi_api_key}"},
        )

        if response.status_code >= 400:
            logger.error(
                "Vapi call initiation failed",
                extra={
                    "status_code": response.status_code,
                    "body": response.text[:500],
                    "call_id": metadata.get("call_id"),
                },
            )
            return CallInitiationResult.failure(
                f"Vapi API error: {response.status_code} - {response.text}",
                raw_response={"status_code": response.status_code, "body": response.text},
            )

        try:
            data = response.json()
        except ValueError:
            return CallInitiationResult.failure(
                "Vapi API returned a non-JSON response",
                raw_response={"status_code": response.status_code, "body": response.text},
            )

        if not isinstance(data, dict) or not data.get("id"):
            return CallInitiationResult.failure(
                "Vapi rejected the call: no call id returned",
                raw_response=data if isinstance(data, dict) else {"body": data},
            )

        return CallInitiationResult(
            success=True,
            vendor_call_id=str(data["id"]),
            status=data.get("status"),
            message="Call initiated successfully",
            raw_response=data,
        )

    def parse_webhook(self, raw_payload: Any) -> CallWebhookPayload:
        if not isinstance(raw_payload, dict):
            raise WebhookParseError("Webhook payload must be a JSON object")

        # Server messages nest the call under "message"
        raw = raw_payload.get("message") if isinstance(raw_payload.get("message"), dict) else raw_payload

        call = raw.get("call") if isinstance(raw.get("call"), dict) else {}
        vendor_call_id = call.get("id") or raw.get("id")
        if not vendor_call_id:
            raise WebhookParseError("Missing call id in Vapi webhook")

        raw_status = raw.get("status") or call.get("status")
        metadata = raw.get("metadata") or call.get("metadata")

        return CallWebhookPayload(
            vendor_call_id=str(vendor_call_id),
            status=map_status(VAPI_STATUS_MAP, raw_status, provider=self.name),
            raw_status=str(raw_status) if raw_status is not None else None,
            transcript=_extract_transcript(raw),
            recording_url=raw.get("recordingUrl") or None,
            duration_seconds=_extract_duration(raw),
            metadata=metadata if isinstance(metadata, dict) else {},
            timestamp=parse_timestamp(raw.get("createdAt")),
        )
