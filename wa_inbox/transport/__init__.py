"""Outbound message transports."""

from __future__ import annotations

from functools import lru_cache

from ..core.config import get_settings
from .base import (
    MessageTransport,
    OutboundMessage,
    TransportResult,
    strip_whatsapp_prefix,
    to_whatsapp_address,
)
from .twilio import TwilioTransport, map_twilio_error


@lru_cache(maxsize=1)
def get_transport() -> MessageTransport:
    """Build the process-wide transport from settings on first use."""

    settings = get_settings()
    return TwilioTransport(
        settings.twilio_account_sid or "",
        settings.twilio_auth_token or "",
        settings.twilio_whatsapp_number or "",
        api_base=settings.twilio_api_base,
    )


def reset_transport() -> None:
    get_transport.cache_clear()


__all__ = [
    "MessageTransport",
    "OutboundMessage",
    "TransportResult",
    "TwilioTransport",
    "get_transport",
    "map_twilio_error",
    "reset_transport",
    "strip_whatsapp_prefix",
    "to_whatsapp_address",
]
