"""
In-memory call provider for development and tests.

Never touches the network; records every initiated call so tests can assert
on what would have been sent.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any

from callengine.telephony.interface import (
    CallInitiationResult,
    CallProvider,
    CallStatus,
    CallWebhookPayload,
    WebhookParseError,
    map_status,
    parse_timestamp,
)

MOCK_STATUS_MAP: dict[str, CallStatus] = {status.value: status for status in CallStatus}


@dataclass
class InitiatedCall:
    to_number: str
    agent_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


class MockCallProvider(CallProvider):
    """Mock provider; set fail_with / raise_exc to simulate vendor outages."""

    name = "mock"

    def __init__(
        self,
        agent_id: str = "mock-agent",
        webhook_secret: str = "",
        allow_unsigned_webhooks: bool = False,
        fail_with: str | None = None,
        raise_exc: Exception | None = None,
    ) -> None:
        super().__init__(
            webhook_secret=webhook_secret,
            allow_unsigned_webhooks=allow_unsigned_webhooks,
        )
        self._agent_id = agent_id
        self.fail_with = fail_with
        self.raise_exc = raise_exc
        self.calls: list[InitiatedCall] = []
        self._ids = itertools.count(1)

    @property
    def agent_id(self) -> str:
        return self._agent_id

    async def initiate_call(
        self,
        to_number: str,
        agent_id: str,
        metadata: dict[str, Any],
    ) -> CallInitiationResult:
        self.calls.append(InitiatedCall(to_number, agent_id, dict(metadata)))
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with is not None:
            return CallInitiationResult.failure(self.fail_with, raw_response={"mock": True})

        vendor_call_id = f"MOCK_CALL_{next(self._ids):06d}"
        return CallInitiationResult(
            success=True,
            vendor_call_id=vendor_call_id,
            status="queued",
            message="Mock call queued",
            raw_response={"mock": True, "call_id": vendor_call_id, "to": to_number},
        )

    def parse_webhook(self, raw_payload: Any) -> CallWebhookPayload:
        if not isinstance(raw_payload, dict):
            raise WebhookParseError("Webhook payload must be a JSON object")
        call_id = raw_payload.get("call_id")
        if not call_id:
            raise WebhookParseError("Missing call_id in webhook")

        raw_status = raw_payload.get("status")
        duration = raw_payload.get("duration")
        metadata = raw_payload.get("metadata")
        return CallWebhookPayload(
            vendor_call_id=str(call_id),
            status=map_status(MOCK_STATUS_MAP, raw_status, provider=self.name),
            raw_status=str(raw_status) if raw_status is not None else None,
            transcript=raw_payload.get("transcript") or None,
            recording_url=raw_payload.get("recording_url") or None,
            duration_seconds=float(duration) if isinstance(duration, (int, float)) else None,
            metadata=metadata if isinstance(metadata, dict) else {},
            timestamp=parse_timestamp(raw_payload.get("timestamp")),
        )
