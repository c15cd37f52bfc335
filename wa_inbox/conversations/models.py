"""Domain models passed between webhook adapters and the conversation services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class MediaAttachment:
    url: str
    content_type: str


@dataclass
class InboundMessage:
    """Uniform representation of a customer message delivered by the provider."""

    message_sid: str
    from_phone: str
    body: str = ""
    to_phone: str | None = None
    media: list[MediaAttachment] = field(default_factory=list)
    profile_name: str | None = None
    wa_id: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        return self.profile_name or self.wa_id or self.from_phone


@dataclass
class InboundResult:
    """Outcome of processing one inbound message; never raised to the provider."""

    processed: bool
    conversation_id: str | None = None
    message_id: str | None = None
    reopened: bool = False
    activated: bool = False
    duplicate: bool = False
    error: str | None = None
