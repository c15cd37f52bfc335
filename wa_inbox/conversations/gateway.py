"""Outbound message gateway: agent replies inside the customer window."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from ..core.errors import ConversationClosedError, NotFoundError, WindowExpiredError
from ..media import validate_outbound_media
from ..transport import MessageTransport, OutboundMessage
from . import schemas
from .repository import ConversationRepository
from .window import is_within_window, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    message: schemas.Message
    provider_status: str

    @property
    def message_id(self) -> UUID:
        return self.message.id


class OutboundGateway:
    """Validate window eligibility, send through the transport and persist."""

    def __init__(
        self,
        repository: ConversationRepository,
        transport: MessageTransport,
        *,
        status_callback: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._transport = transport
        self._status_callback = status_callback
        self._clock = clock

    def send(
        self,
        conversation_id: UUID,
        content: str,
        message_type: schemas.MessageType = schemas.MessageType.TEXT,
        media_url: str | None = None,
        media_content_type: str | None = None,
        *,
        sent_by: str | None = None,
    ) -> SendResult:
        """Send one free-form message on ``conversation_id``.

        Checks run in a fixed order: the conversation must exist, must not be
        closed, must be inside its window, and any media must validate. A
        transport failure propagates as a :class:`TransportError` and leaves
        no message row behind.
        """

        now = self._clock()
        conversation = self._repo.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if conversation.status == schemas.ConversationStatus.CLOSED:
            raise ConversationClosedError(
                "Cannot send message to closed conversation",
                details=(
                    "This conversation has been closed due to 24-hour inactivity. "
                    "Customer must send a new message to reopen."
                ),
            )
        if not is_within_window(conversation, now):
            raise WindowExpiredError(
                "Cannot send message - conversation window expired",
                details="24-hour conversation window has expired. Only template messages are allowed.",
            )
        media = validate_outbound_media(message_type, media_url, media_content_type)

        contact = self._repo.get_contact(conversation.contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {conversation.contact_id} not found")

        result = self._transport.send(
            OutboundMessage(
                to=contact.phone_number,
                body=content,
                media_urls=[media.url] if media else [],
                status_callback=self._status_callback,
            )
        )

        message = self._repo.add_message(
            conversation.id,
            direction=schemas.MessageDirection.OUTBOUND,
            message_type=message_type,
            content=content,
            created_at=now,
            media_url=media.url if media else None,
            media_content_type=media.content_type if media else None,
            message_sid=result.id,
            provider_status=result.status,
            sent_by=sent_by,
        )
        self._repo.touch_conversation(
            conversation.id,
            last_message_at=now,
            status=schemas.ConversationStatus.OPEN,
        )
        logger.info(
            "Sent %s message %s on conversation %s",
            message_type.value,
            result.id,
            conversation.id,
        )
        return SendResult(message=message, provider_status=result.status)
