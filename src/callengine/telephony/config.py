"""
Call provider configuration.

Vendor selection and credentials come from TELEPHONY_* environment variables.
"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported call provider types."""

    CALLKARO = "callkaro"
    VAPI = "vapi"
    MOCK = "mock"


DEFAULT_PROVIDER = ProviderType.CALLKARO


class TelephonyConfig(BaseSettings):
    """Call provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider selection; kept as a plain string so an unknown name can fall back
    provider: str = Field(default=DEFAULT_PROVIDER.value)

    # CallKaro
    callkaro_base_url: str = Field(default="https://api.callkaro.ai")
    callkaro_api_key: str = Field(default="")
    callkaro_agent_id: str = Field(default="")
    callkaro_webhook_secret: str = Field(default="")

    # Vapi
    vapi_base_url: str = Field(default="https://api.vapi.ai")
    vapi_api_key: str = Field(default="")
    vapi_assistant_id: str = Field(default="")
    vapi_phone_number_id: str = Field(default="")
    vapi_webhook_secret: str = Field(default="")

    # Mock
    mock_agent_id: str = Field(default="mock-agent")
    mock_webhook_secret: str = Field(default="")

    # Webhook authentication: unsigned deliveries are only accepted when this is set explicitly
    allow_unsigned_webhooks: bool = Field(default=False)

    # Vendor HTTP timeout, short relative to the scheduler tick
    call_timeout_seconds: float = Field(default=15.0, gt=0, le=120)

    def resolve_provider_type(self) -> ProviderType | None:
        """Return the configured ProviderType, or None if the name is unknown."""
        try:
            return ProviderType(self.provider.strip().lower())
        except ValueError:
            return None


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
