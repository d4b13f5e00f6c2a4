"""
Call provider factory.

Single source of truth for provider selection:
- configuration comes from TelephonyConfig (Pydantic Settings, OS env + .env)
- the provider is resolved once per process by the entry point
"""

from __future__ import annotations

import logging

from callengine.telephony.adapters.callkaro import CallKaroProvider
from callengine.telephony.adapters.mock import MockCallProvider
from callengine.telephony.adapters.vapi import VapiProvider
from callengine.telephony.config import DEFAULT_PROVIDER, ProviderType, TelephonyConfig
from callengine.telephony.interface import CallProvider

logger = logging.getLogger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


def resolve_provider_type(config: TelephonyConfig) -> ProviderType:
    """Resolve the configured provider, falling back to the default on unknown names."""
    provider_type = config.resolve_provider_type()
    if provider_type is None:
        logger.error(
            "Unknown call provider configured, falling back to default",
            extra={"configured": config.provider, "fallback": DEFAULT_PROVIDER.value},
        )
        return DEFAULT_PROVIDER
    return provider_type


def create_call_provider(config: TelephonyConfig | None = None) -> CallProvider:
    """Create the configured call provider.

    Raises:
        ProviderConfigurationError: required credentials are missing.
    """
    cfg = config or TelephonyConfig()
    provider_type = resolve_provider_type(cfg)

    logger.info(
        "Call provider config resolved",
        extra={
            "provider_type": provider_type.value,
            "callkaro_api_key": _mask(cfg.callkaro_api_key),
            "vapi_api_key": _mask(cfg.vapi_api_key),
            "allow_unsigned_webhooks": cfg.allow_unsigned_webhooks,
            "call_timeout_seconds": cfg.call_timeout_seconds,
        },
    )

    if provider_type == ProviderType.CALLKARO:
        return CallKaroProvider(cfg)

    if provider_type == ProviderType.VAPI:
        return VapiProvider(cfg)

    return MockCallProvider(
        agent_id=cfg.mock_agent_id,
        webhook_secret=cfg.mock_webhook_secret,
        allow_unsigned_webhooks=cfg.allow_unsigned_webhooks,
    )


def validate_provider_config(config: TelephonyConfig | None = None) -> list[str]:
    """Return the settings the selected provider is missing (empty when usable)."""
    cfg = config or TelephonyConfig()
    provider_type = resolve_provider_type(cfg)
    missing: list[str] = []

    if provider_type == ProviderType.CALLKARO:
        if not cfg.callkaro_api_key:
            missing.append("TELEPHONY_CALLKARO_API_KEY")
        if not cfg.callkaro_agent_id:
            missing.append("TELEPHONY_CALLKARO_AGENT_ID")
        if not cfg.callkaro_webhook_secret and not cfg.allow_unsigned_webhooks:
            missing.append("TELEPHONY_CALLKARO_WEBHOOK_SECRET")
    elif provider_type == ProviderType.VAPI:
        if not cfg.vapi_api_key:
            missing.append("TELEPHONY_VAPI_API_KEY")
        if not cfg.vapi_assistant_id:
            missing.append("TELEPHONY_VAPI_ASSISTANT_ID")
        if not cfg.vapi_phone_number_id:
            missing.append("TELEPHONY_VAPI_PHONE_NUMBER_ID")
        if not cfg.vapi_webhook_secret and not cfg.allow_unsigned_webhooks:
            missing.append("TELEPHONY_VAPI_WEBHOOK_SECRET")

    return missing
