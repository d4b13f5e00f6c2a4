"""
Call provider interface definition.

Every voice vendor is wrapped by a CallProvider that:
- places outbound calls (initiate_call)
- normalizes webhook payloads into CallWebhookPayload (parse_webhook)
- authenticates webhook deliveries (verify_webhook_signature)
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from callengine.shared.logging import get_logger

logger = get_logger(__name__)


class CallStatus(str, Enum):
    """Canonical call status, independent of any vendor vocabulary."""

    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {CallStatus.COMPLETED, CallStatus.FAILED, CallStatus.NO_ANSWER, CallStatus.BUSY}
)

# Statuses that count as "the user already has their call today"
ACTIVE_OR_SUCCESSFUL_STATUSES = frozenset(
    {CallStatus.QUEUED, CallStatus.RINGING, CallStatus.IN_PROGRESS, CallStatus.COMPLETED}
)


@dataclass(frozen=True)
class CallInitiationResult:
    """Outcome of an initiate_call request.

    Vendor-side failures (non-2xx, business rejection) come back with
    success=False; they are never raised.
    """

    success: bool
    vendor_call_id: str | None = None
    status: str | None = None
    message: str | None = None
    error: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, raw_response: dict[str, Any] | None = None) -> "CallInitiationResult":
        return cls(success=False, error=error, raw_response=raw_response or {})


class CallWebhookPayload(BaseModel):
    """Vendor webhook normalized into the canonical vocabulary."""

    model_config = ConfigDict(frozen=True)

    vendor_call_id: str = Field(..., min_length=1)
    status: CallStatus
    raw_status: str | None = None
    transcript: str | None = None
    recording_url: str | None = None
    duration_seconds: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CallProviderError(Exception):
    """Base exception for call provider errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.provider_response = provider_response or {}


class ProviderConfigurationError(CallProviderError):
    """Provider cannot be constructed with the current configuration."""


class WebhookParseError(CallProviderError):
    """Webhook payload is malformed."""


def map_status(
    status_map: dict[str, CallStatus],
    raw_status: Any,
    *,
    provider: str,
) -> CallStatus:
    """Map a vendor status onto the canonical enum.

    Total: unknown or missing values map to FAILED.
    """
    key = str(raw_status or "").strip().lower()
    status = status_map.get(key)
    if status is None:
        logger.warning(
            "Unmapped vendor call status, treating as failed",
            extra={"provider": provider, "raw_status": raw_status},
        )
        return CallStatus.FAILED
    return status


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 vendor timestamp, defaulting to now (UTC)."""
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return datetime.now(timezone.utc)


class CallProvider(ABC):
    """Abstract interface for voice call vendors."""

    name: str = "provider"
    signature_header: str = "X-Webhook-Signature"

    def __init__(
        self,
        webhook_secret: str = "",
        allow_unsigned_webhooks: bool = False,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._allow_unsigned_webhooks = allow_unsigned_webhooks

    @property
    @abstractmethod
    def agent_id(self) -> str:
        """Agent / assistant identifier used for outbound calls."""

    @abstractmethod
    async def initiate_call(
        self,
        to_number: str,
        agent_id: str,
        metadata: dict[str, Any],
    ) -> CallInitiationResult:
        """Place an outbound call.

        Raises:
            httpx.TransportError: vendor unreachable or timed out.
        """

    @abstractmethod
    def parse_webhook(self, raw_payload: Any) -> CallWebhookPayload:
        """Normalize a decoded webhook body.

        Raises:
            WebhookParseError: payload is not usable.
        """

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        """Check an HMAC-SHA256 (hex) signature over the raw request body."""
        if not self._webhook_secret:
            if self._allow_unsigned_webhooks:
                logger.warning(
                    "Webhook secret not configured; accepting unsigned webhook",
                    extra={"provider": self.name},
                )
                return True
            logger.error(
                "Webhook secret not configured; rejecting webhook",
                extra={"provider": self.name},
            )
            return False

        if not signature:
            return False

        expected = hmac.new(
            self._webhook_secret.encode("utf-8"),
            raw_body,
            hashlib.sha256,
        ).hexdigest()
        candidate = signature.strip()
        if candidate.lower().startswith("sha256="):
            candidate = candidate[len("sha256="):]
        return hmac.compare_digest(expected, candidate.lower())

    async def close(self) -> None:
        """Release HTTP resources."""
        return None
