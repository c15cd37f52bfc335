"""Transport capability used to hand messages to the messaging provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class OutboundMessage:
    """A single message ready for the provider.

    ``to`` is an E.164 phone number. Free-form sends use ``body`` and
    ``media_urls``; template sends use ``content_sid`` with positional
    ``content_variables`` (keys ``"1"``, ``"2"`` ...).
    """

    to: str
    body: str = ""
    media_urls: list[str] = field(default_factory=list)
    content_sid: str | None = None
    content_variables: dict[str, str] | None = None
    status_callback: str | None = None


@dataclass(frozen=True)
class TransportResult:
    id: str
    status: str


class MessageTransport(Protocol):
    def send(self, message: OutboundMessage) -> TransportResult:
        """Send ``message`` or raise :class:`~wa_inbox.core.errors.TransportError`."""
        ...


def to_whatsapp_address(phone_number: str) -> str:
    cleaned = "".join(phone_number.split())
    if cleaned.startswith("whatsapp:"):
        return cleaned
    return f"whatsapp:{cleaned}"


def strip_whatsapp_prefix(address: str) -> str:
    cleaned = address.strip()
    if cleaned.startswith("whatsapp:"):
        cleaned = cleaned[len("whatsapp:"):]
    return cleaned
