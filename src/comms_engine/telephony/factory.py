"""
Provider adapter factory.

Adapters are built once at application startup from ``TelephonyConfig`` and
handed to the components that need them; nothing here is cached at module
level.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from starlette.requests import Request

from comms_engine.sessions.models import SessionKind
from comms_engine.telephony.config import ProviderType, TelephonyConfig
from comms_engine.telephony.interface import ProviderAdapter, ProviderFamily
from comms_engine.telephony.mock_adapter import MockProviderAdapter
from comms_engine.telephony.twilio_adapter import TwilioMessagingAdapter
from comms_engine.telephony.vonage_adapter import VonageVoiceAdapter

logger = logging.getLogger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


@dataclass
class ProviderAdapters:
    """The configured adapter for each provider family."""

    voice: ProviderAdapter
    messaging: ProviderAdapter

    def for_kind(self, kind: SessionKind) -> ProviderAdapter:
        return self.voice if kind == SessionKind.CALL else self.messaging

    def close(self) -> None:
        self.voice.close()
        self.messaging.close()


def get_adapters(request: Request) -> ProviderAdapters:
    """FastAPI dependency returning the adapters built at startup."""
    return request.app.state.adapters


def build_voice_adapter(cfg: TelephonyConfig) -> ProviderAdapter:
    if cfg.voice_provider == ProviderType.VONAGE:
        return VonageVoiceAdapter(cfg)
    if cfg.voice_provider == ProviderType.MOCK:
        return MockProviderAdapter(
            ProviderFamily.VOICE,
            origin_number=cfg.vonage_from_number or "+15005550006",
            default_region=cfg.default_region,
        )
    raise ValueError(f"Unsupported voice provider: {cfg.voice_provider}")


def build_messaging_adapter(cfg: TelephonyConfig) -> ProviderAdapter:
    if cfg.messaging_provider == ProviderType.TWILIO:
        return TwilioMessagingAdapter(cfg)
    if cfg.messaging_provider == ProviderType.MOCK:
        return MockProviderAdapter(
            ProviderFamily.MESSAGING,
            origin_number=cfg.twilio_from_number or "+15005550006",
            default_region=cfg.default_region,
        )
    raise ValueError(f"Unsupported messaging provider: {cfg.messaging_provider}")


def build_adapters(cfg: TelephonyConfig) -> ProviderAdapters:
    """Create the voice and messaging adapters described by ``cfg``."""
    logger.info(
        "Telephony config resolved",
        extra={
            "voice_provider": cfg.voice_provider.value,
            "messaging_provider": cfg.messaging_provider.value,
            "vonage_application_id": _mask(cfg.vonage_application_id),
            "twilio_account_sid": _mask(cfg.twilio_account_sid),
            "webhook_base_url": cfg.webhook_base_url,
            "initiation_timeout_seconds": cfg.initiation_timeout_seconds,
        },
    )
    return ProviderAdapters(
        voice=build_voice_adapter(cfg),
        messaging=build_messaging_adapter(cfg),
    )
