"""
Telephony provider configuration.

Voice calls go through the Vonage Voice API, text messages through Twilio
Programmable Messaging. Either family can be switched to the in-memory mock
for local development and tests.
"""

from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported provider implementations."""

    VONAGE = "vonage"
    TWILIO = "twilio"
    MOCK = "mock"


class TelephonyConfig(BaseSettings):
    """Telephony provider configuration from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TELEPHONY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider selection
    voice_provider: ProviderType = Field(default=ProviderType.VONAGE)
    messaging_provider: ProviderType = Field(default=ProviderType.TWILIO)

    # Vonage (voice)
    vonage_api_base_url: str = Field(default="https://api.nexmo.com")
    vonage_application_id: str = Field(default="")
    vonage_private_key: str = Field(
        default="",
        description="PEM private key contents, or a path to the PEM file.",
    )
    vonage_from_number: str = Field(default="")

    # Twilio (messaging)
    twilio_api_base_url: str = Field(default="https://api.twilio.com/2010-04-01")
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_from_number: str = Field(default="")

    # Public base URL the providers call back on
    webhook_base_url: str = Field(default="http://localhost:8000")

    # Region used to parse numbers given without a country code
    default_region: str = Field(default="US", min_length=2, max_length=2)

    # Timeouts
    initiation_timeout_seconds: float = Field(default=10.0, gt=0, le=60)
    ringing_timer_seconds: int = Field(default=60, ge=1, le=120)
    length_timer_seconds: int = Field(default=7200, ge=1, le=86400)

    # Webhook ingestion
    validate_signatures: bool = Field(default=False)
    webhook_max_retries: int = Field(default=3, ge=0, le=10)
    webhook_retry_base_seconds: float = Field(default=0.05, ge=0)
    dead_letter_path: str = Field(default="var/dead_letter_webhooks.jsonl")

    def get_webhook_url(self, path: str) -> str:
        base = self.webhook_base_url.rstrip("/")
        return f"{base}{path}"

    def load_vonage_private_key(self) -> str:
        """Return the Vonage private key PEM, reading it from disk when a path was given."""
        key = self.vonage_private_key.strip()
        if not key or key.startswith("-----BEGIN"):
            return key
        path = Path(key)
        if path.is_file():
            return path.read_text(encoding="utf-8")
        return key


def get_telephony_config() -> TelephonyConfig:
    return TelephonyConfig()
