"""Provider webhook adapters."""

from __future__ import annotations

from ..core.config import get_settings
from .base import ChannelAdapter
from .twilio import TwilioWhatsAppAdapter, compute_signature


def get_adapter() -> ChannelAdapter:
    """Return the webhook adapter configured for this process."""

    settings = get_settings()
    return TwilioWhatsAppAdapter(
        auth_token=settings.twilio_auth_token,
        validate=settings.twilio_validate_signature,
    )


__all__ = ["ChannelAdapter", "TwilioWhatsAppAdapter", "compute_signature", "get_adapter"]
