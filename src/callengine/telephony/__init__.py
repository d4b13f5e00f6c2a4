"""
Vendor call provider abstraction, adapters and webhook reconciliation.
"""

from callengine.telephony.config import ProviderType, TelephonyConfig
from callengine.telephony.interface import (
    CallInitiationResult,
    CallProvider,
    CallProviderError,
    CallStatus,
    CallWebhookPayload,
    ProviderConfigurationError,
    WebhookParseError,
)

__all__ = [
    "CallInitiationResult",
    "CallProvider",
    "CallProviderError",
    "CallStatus",
    "CallWebhookPayload",
    "ProviderConfigurationError",
    "ProviderType",
    "TelephonyConfig",
    "WebhookParseError",
]
