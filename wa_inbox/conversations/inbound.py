"""Turn provider-delivered customer messages into stored conversation state."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from ..core.errors import DuplicateContactError, PersistenceError
from ..media import derive_message_type, primary_attachment, placeholder_text
from . import schemas
from .models import InboundMessage, InboundResult
from .repository import ConversationRepository
from .window import DEFAULT_WINDOW, WindowManager, utcnow

logger = logging.getLogger(__name__)


class InboundProcessor:
    """Record an inbound message and drive the window transition.

    :meth:`process` never raises: the provider retries on non-2xx answers, so
    every failure is logged and reported in the returned
    :class:`InboundResult` instead.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        *,
        window: timedelta = DEFAULT_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._clock = clock
        self.window_manager = WindowManager(repository, window=window, clock=clock)

    def process(self, inbound: InboundMessage) -> InboundResult:
        try:
            return self._process(inbound)
        except Exception as exc:
            logger.exception("Failed to process inbound message %s", inbound.message_sid)
            return InboundResult(processed=False, error=str(exc))

    def find_or_create_contact(self, inbound: InboundMessage, now: datetime) -> schemas.Contact:
        contact = self._repo.get_contact_by_phone(inbound.from_phone)
        if contact is not None:
            return contact
        try:
            contact = self._repo.create_contact(
                inbound.from_phone, inbound.display_name, now=now
            )
            logger.info("Created contact %s for %s", contact.id, inbound.from_phone)
            return contact
        except DuplicateContactError:
            # A concurrent delivery created it first.
            contact = self._repo.get_contact_by_phone(inbound.from_phone)
            if contact is None:
                raise PersistenceError(
                    f"Contact {inbound.from_phone} vanished after duplicate insert"
                )
            return contact

    def find_or_create_conversation(
        self, contact: schemas.Contact, now: datetime
    ) -> schemas.Conversation:
        conversation = self._repo.latest_conversation_for_contact(contact.id)
        if conversation is not None:
            return conversation
        return self._repo.create_conversation(
            contact.id,
            now=now,
            status=schemas.ConversationStatus.OPEN,
            visibility=schemas.Visibility.ACTIVE,
        )

    def _process(self, inbound: InboundMessage) -> InboundResult:
        now = self._clock()
        if not inbound.from_phone:
            logger.warning("Inbound message %s has no sender; ignoring", inbound.message_sid)
            return InboundResult(processed=False, error="missing sender")

        if inbound.message_sid:
            existing = self._repo.get_message_by_sid(inbound.message_sid)
            if existing is not None:
                logger.info("Inbound message %s already stored", inbound.message_sid)
                return InboundResult(
                    processed=True,
                    conversation_id=str(existing.conversation_id),
                    message_id=str(existing.id),
                    duplicate=True,
                )

        contact = self.find_or_create_contact(inbound, now)
        conversation = self.find_or_create_conversation(contact, now)
        was_closed = conversation.status == schemas.ConversationStatus.CLOSED
        was_dormant = conversation.visibility == schemas.Visibility.DORMANT
        conversation = self.window_manager.record_inbound(conversation, now)

        attachment = primary_attachment(inbound.media)
        if attachment is not None:
            message_type = derive_message_type(attachment.content_type)
        else:
            message_type = schemas.MessageType.TEXT
        if inbound.media and attachment is None:
            logger.warning(
                "Inbound message %s carried no supported media (%s)",
                inbound.message_sid,
                ", ".join(m.content_type for m in inbound.media),
            )
        content = inbound.body
        if not content and attachment is not None:
            content = placeholder_text(message_type)

        message = self._repo.add_message(
            conversation.id,
            direction=schemas.MessageDirection.INBOUND,
            message_type=message_type,
            content=content,
            created_at=now,
            media_url=attachment.url if attachment else None,
            media_content_type=attachment.content_type if attachment else None,
            message_sid=inbound.message_sid or None,
            provider_status="received",
        )
        self._repo.touch_conversation(conversation.id, last_message_at=now)
        return InboundResult(
            processed=True,
            conversation_id=str(conversation.id),
            message_id=str(message.id),
            reopened=was_closed,
            activated=was_dormant,
        )
