"""Conversation window state machine.

A conversation has no window until the customer writes. Each inbound message
opens (or reopens) a window ending ``window_hours`` later; while it is open
agents may send free-form replies. Once it lapses the periodic sweep closes
the conversation, and the next inbound message reopens it.

The transition functions here are pure: they take a conversation and a
timestamp and return new field values. :class:`WindowManager` applies them
through a repository.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from . import schemas
from .repository import ConversationRepository, WindowTransition

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_within_window(conversation: schemas.Conversation, now: datetime) -> bool:
    if conversation.status == schemas.ConversationStatus.CLOSED:
        return False
    expires = conversation.window_expires_at
    return expires is not None and expires > now


def inbound_transition(
    conversation: schemas.Conversation,
    now: datetime,
    window: timedelta = DEFAULT_WINDOW,
) -> WindowTransition:
    """Compute the state after a customer message arrives at ``now``.

    Applies regardless of the prior status, so a closed conversation reopens.
    Visibility only ever moves from dormant to active.
    """

    activated_at = now if conversation.visibility == schemas.Visibility.DORMANT else None
    return WindowTransition(
        status=schemas.ConversationStatus.OPEN,
        visibility=schemas.Visibility.ACTIVE,
        last_customer_message_at=now,
        window_expires_at=now + window,
        activated_at=activated_at,
    )


def should_close(conversation: schemas.Conversation, now: datetime) -> bool:
    expires = conversation.window_expires_at
    return (
        expires is not None
        and expires < now
        and conversation.status != schemas.ConversationStatus.CLOSED
    )


class WindowManager:
    """Apply window transitions to stored conversations."""

    def __init__(
        self,
        repository: ConversationRepository,
        *,
        window: timedelta = DEFAULT_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self.window = window
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def record_inbound(
        self, conversation: schemas.Conversation, now: datetime | None = None
    ) -> schemas.Conversation:
        now = now or self.now()
        transition = inbound_transition(conversation, now, self.window)
        updated = self._repo.apply_window_transition(conversation.id, transition)
        if conversation.status == schemas.ConversationStatus.CLOSED:
            logger.info("Conversation %s reopened by customer message", conversation.id)
        if transition.activated_at is not None:
            logger.info("Conversation %s activated", conversation.id)
        return updated

    def is_within_window(
        self, conversation: schemas.Conversation, now: datetime | None = None
    ) -> bool:
        return is_within_window(conversation, now or self.now())

    def window_state(
        self, conversation: schemas.Conversation, now: datetime | None = None
    ) -> schemas.WindowState:
        now = now or self.now()
        within = is_within_window(conversation, now)
        remaining = 0
        if within and conversation.window_expires_at is not None:
            remaining = int((conversation.window_expires_at - now).total_seconds())
        return schemas.WindowState(
            conversation_id=conversation.id,
            status=conversation.status,
            visibility=conversation.visibility,
            is_within_window=within,
            window_expires_at=conversation.window_expires_at,
            seconds_remaining=remaining,
        )

    def sweep(self, now: datetime | None = None) -> list:
        """Close every conversation whose window lapsed before ``now``.

        Idempotent: a second run at the same instant closes nothing. Never
        changes visibility.
        """

        now = now or self.now()
        closed = self._repo.close_expired(now)
        if closed:
            logger.info("Window sweep closed %d conversation(s)", len(closed))
        return closed

    def expiry_report(
        self, now: datetime | None = None, within: timedelta = timedelta(hours=1)
    ) -> schemas.ExpiryReport:
        now = now or self.now()
        soon = self._repo.list_window_candidates(
            expires_before=now + within, include_expired=False, now=now
        )
        expired = self._repo.list_window_candidates(
            expires_before=now, include_expired=True, now=now
        )
        return schemas.ExpiryReport(
            expiring_soon=soon,
            already_expired=expired,
            expiring_soon_count=len(soon),
            already_expired_count=len(expired),
            timestamp=now,
        )
