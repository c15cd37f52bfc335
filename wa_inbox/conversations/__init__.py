"""Conversation window, inbound processing and outbound sending."""

from . import schemas
from .models import InboundMessage, InboundResult, MediaAttachment

__all__ = [
    "InboundMessage",
    "InboundResult",
    "MediaAttachment",
    "schemas",
]
