"""
Webhook reconciler for call status callbacks.

Applies vendor status updates to call records. Deliveries may be duplicated
or arrive out of order, so updates only ever move a record forward:

    queued < ringing < in_progress < {completed, failed, no_answer, busy}

A replay of the current status only fills in fields that are still empty,
and a terminal status is never replaced. The retry policy is consulted only
on the transition into a terminal status, which keeps replays from
scheduling extra retries. The retry job is written in the same transaction
as the status change.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from callengine.calls.models import CallRecord
from callengine.calls.repository import CallRecordRepository
from callengine.calls.retry import RETRYABLE_STATUSES, RetryContext, RetryPolicy
from callengine.shared.database import DatabaseManager, utcnow
from callengine.shared.logging import get_logger
from callengine.telephony.interface import (
    CallProvider,
    CallStatus,
    CallWebhookPayload,
    WebhookParseError,
)
from callengine.users.repository import UserProfileRepository

logger = get_logger(__name__)

GENERIC_SIGNATURE_HEADER = "X-Webhook-Signature"

# Raw deliveries kept per record for audit
MAX_AUDITED_WEBHOOKS = 50

_STATUS_RANK: dict[CallStatus, int] = {
    CallStatus.QUEUED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.COMPLETED: 3,
    CallStatus.FAILED: 3,
    CallStatus.NO_ANSWER: 3,
    CallStatus.BUSY: 3,
}

# completed_at marks the call as closed on our side; no_answer/busy stay open
_CLOSING_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.FAILED})


class WebhookAuthenticationError(Exception):
    """Webhook signature missing or invalid."""


@dataclass(frozen=True)
class ReconcileResult:
    found: bool
    vendor_call_id: str
    call_id: str | None = None
    status: CallStatus | None = None
    applied: bool = False
    outcome: str = "not_found"
    retry_scheduled: bool = False

    def as_response(self) -> dict[str, Any]:
        if not self.found:
            return {"success": False, "error": "Call not found"}
        return {
            "success": True,
            "call_id": self.call_id,
            "status": self.status.value if self.status else None,
            "applied": self.applied,
            "outcome": self.outcome,
            "retry_scheduled": self.retry_scheduled,
        }


def _fill_missing(record: CallRecord, payload: CallWebhookPayload) -> bool:
    changed = False
    if payload.transcript and not record.transcript:
        record.transcript = payload.transcript
        changed = True
    if payload.recording_url and not record.recording_url:
        record.recording_url = payload.recording_url
        changed = True
    if payload.duration_seconds is not None and record.duration_seconds is None:
        record.duration_seconds = payload.duration_seconds
        changed = True
    return changed


def _audit(record: CallRecord, raw_payload: Any) -> None:
    vendor_payload = dict(record.vendor_payload or {})
    history = list(vendor_payload.get("webhooks") or [])
    # Redeliveries of the same body are recorded once
    if raw_payload in history:
        return
    history.append(raw_payload)
    vendor_payload["webhooks"] = history[-MAX_AUDITED_WEBHOOKS:]
    record.vendor_payload = vendor_payload


class WebhookReconciler:
    """Authenticates, parses and applies vendor webhooks."""

    def __init__(
        self,
        db: DatabaseManager,
        provider: CallProvider,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._db = db
        self._provider = provider
        self._retry_policy = retry_policy

    @property
    def signature_headers(self) -> tuple[str, ...]:
        headers = [self._provider.signature_header]
        if self._provider.signature_header.lower() != GENERIC_SIGNATURE_HEADER.lower():
            headers.append(GENERIC_SIGNATURE_HEADER)
        return tuple(headers)

    def authenticate(self, raw_body: bytes, signature: str | None) -> None:
        """Raises WebhookAuthenticationError unless the signature verifies."""
        if not self._provider.verify_webhook_signature(raw_body, signature):
            logger.warning(
                "Invalid webhook signature",
                extra={"provider": self._provider.name, "signature_present": bool(signature)},
            )
            raise WebhookAuthenticationError("Invalid webhook signature")

    def parse(self, raw_body: bytes) -> tuple[CallWebhookPayload, Any]:
        """Decode the body and normalize it through the provider.

        Raises:
            WebhookParseError: body is not JSON or not a usable payload.
        """
        try:
            raw_payload = json.loads(raw_body.decode("utf-8") or "null")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WebhookParseError(f"Invalid JSON body: {exc}") from exc
        try:
            return self._provider.parse_webhook(raw_payload), raw_payload
        except WebhookParseError:
            raise
        except ValueError as exc:
            # pydantic.ValidationError is a ValueError
            raise WebhookParseError(f"Invalid webhook payload: {exc}") from exc

    async def _find_record(
        self,
        repo: CallRecordRepository,
        payload: CallWebhookPayload,
    ) -> CallRecord | None:
        """Record for the webhook, by vendor id or by our id echoed in metadata.

        The vendor may call back before initiate_call has returned, while the
        record does not yet know its vendor id.
        """
        record = await repo.get_by_vendor_call_id(payload.vendor_call_id, for_update=True)
        if record is not None:
            return record

        call_id = payload.metadata.get("call_id")
        if not isinstance(call_id, str) or not call_id:
            return None
        record = await repo.get_by_id(call_id, for_update=True)
        if record is None or record.vendor_call_id not in (None, "", payload.vendor_call_id):
            return None
        record.vendor_call_id = payload.vendor_call_id
        logger.info(
            "Webhook matched call by metadata",
            extra={"call_id": record.id, "vendor_call_id": payload.vendor_call_id},
        )
        return record

    async def reconcile(self, payload: CallWebhookPayload, raw_payload: Any) -> ReconcileResult:
        """Apply one normalized webhook to its call record."""
        retry_ctx: RetryContext | None = None
        retry_scheduled = False

        async with self._db.session() as session:
            repo = CallRecordRepository(session)
            record = await self._find_record(repo, payload)
            if record is None:
                logger.warning(
                    "Webhook for unknown call",
                    extra={
                        "provider": self._provider.name,
                        "vendor_call_id": payload.vendor_call_id,
                        "status": payload.status.value,
                    },
                )
                return ReconcileResult(found=False, vendor_call_id=payload.vendor_call_id)

            _audit(record, raw_payload)
            current = record.status
            incoming = payload.status

            if _STATUS_RANK[incoming] > _STATUS_RANK[current] and not current.is_terminal:
                now = utcnow()
                record.status = incoming
                record.last_status_at = now
                if incoming in _CLOSING_STATUSES:
                    record.completed_at = now
                if payload.transcript:
                    record.transcript = payload.transcript
                if payload.recording_url:
                    record.recording_url = payload.recording_url
                if payload.duration_seconds is not None:
                    record.duration_seconds = payload.duration_seconds
                applied, outcome = True, "applied"
                if incoming in RETRYABLE_STATUSES:
                    profile = await UserProfileRepository(session).get_by_id(record.user_id)
                    retry_ctx = RetryContext(
                        call_id=record.id,
                        user_id=record.user_id,
                        phone=record.to_number,
                        status=incoming,
                        retry_count=record.retry_count,
                        name=profile.name if profile else None,
                        timezone=profile.local_tz if profile else None,
                    )
            elif incoming == current:
                applied = _fill_missing(record, payload)
                outcome = "filled" if applied else "duplicate"
            else:
                applied, outcome = False, "stale"

            call_id, status = record.id, record.status
            await session.flush()

            # Enqueued in the status change transaction; an enqueue error rolls both back
            if retry_ctx is not None and self._retry_policy is not None:
                retry_outcome = await self._retry_policy.handle(retry_ctx, session=session)
                retry_scheduled = retry_outcome.scheduled

        logger.info(
            "Webhook reconciled",
            extra={
                "provider": self._provider.name,
                "call_id": call_id,
                "vendor_call_id": payload.vendor_call_id,
                "incoming_status": incoming.value,
                "previous_status": current.value,
                "outcome": outcome,
            },
        )

        return ReconcileResult(
            found=True,
            vendor_call_id=payload.vendor_call_id,
            call_id=call_id,
            status=status,
            applied=applied,
            outcome=outcome,
            retry_scheduled=retry_scheduled,
        )
