"""Persistence for contacts, conversations and messages."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..core.db import is_unique_violation
from ..core.errors import DuplicateContactError, PersistenceError
from . import schemas


@dataclass(frozen=True)
class WindowTransition:
    """Field values produced by the window state machine for one conversation."""

    status: schemas.ConversationStatus
    visibility: schemas.Visibility
    last_customer_message_at: datetime
    window_expires_at: datetime
    activated_at: Optional[datetime] = None


@dataclass(frozen=True)
class CampaignConversationStats:
    total: int
    activated: int
    dormant: int


class ConversationRepository(Protocol):
    """Abstraction over the contact, conversation and message tables."""

    # Contacts
    def get_contact(self, contact_id: UUID) -> Optional[schemas.Contact]: ...

    def get_contact_by_phone(self, phone_number: str) -> Optional[schemas.Contact]: ...

    def create_contact(
        self, phone_number: str, name: Optional[str], *, now: datetime
    ) -> schemas.Contact: ...

    # Conversations
    def get_conversation(self, conversation_id: UUID) -> Optional[schemas.Conversation]: ...

    def latest_conversation_for_contact(
        self, contact_id: UUID
    ) -> Optional[schemas.Conversation]: ...

    def create_conversation(
        self,
        contact_id: UUID,
        *,
        now: datetime,
        status: schemas.ConversationStatus = schemas.ConversationStatus.OPEN,
        visibility: schemas.Visibility = schemas.Visibility.ACTIVE,
        created_by_campaign: Optional[UUID] = None,
    ) -> schemas.Conversation: ...

    def apply_window_transition(
        self, conversation_id: UUID, transition: WindowTransition
    ) -> schemas.Conversation: ...

    def touch_conversation(
        self,
        conversation_id: UUID,
        *,
        last_message_at: datetime,
        status: Optional[schemas.ConversationStatus] = None,
    ) -> None: ...

    def close_expired(self, now: datetime) -> List[UUID]: ...

    def list_window_candidates(
        self, *, expires_before: datetime, include_expired: bool, now: datetime
    ) -> List[UUID]: ...

    def campaign_conversation_stats(self, campaign_id: UUID) -> CampaignConversationStats: ...

    # Messages
    def add_message(
        self,
        conversation_id: UUID,
        *,
        direction: schemas.MessageDirection,
        message_type: schemas.MessageType,
        content: str,
        created_at: datetime,
        media_url: Optional[str] = None,
        media_content_type: Optional[str] = None,
        message_sid: Optional[str] = None,
        provider_status: Optional[str] = None,
        sent_by: Optional[str] = None,
    ) -> schemas.Message: ...

    def get_message_by_sid(self, message_sid: str) -> Optional[schemas.Message]: ...

    def list_messages(self, conversation_id: UUID, limit: int = 100) -> List[schemas.Message]: ...


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`ConversationRepository`."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    # Utility -----------------------------------------------------------------
    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        try:
            with self._cursor() as cur:
                cur.execute(query, params)
                return cur.fetchone()
        except psycopg.Error as exc:
            raise PersistenceError("Database query failed", details=str(exc)) from exc

    # Contacts ----------------------------------------------------------------
    def get_contact(self, contact_id: UUID) -> Optional[schemas.Contact]:
        row = self._fetch_one("SELECT * FROM contacts WHERE id = %s", (contact_id,))
        return schemas.Contact(**row) if row else None

    def get_contact_by_phone(self, phone_number: str) -> Optional[schemas.Contact]:
        row = self._fetch_one(
            "SELECT * FROM contacts WHERE phone_number = %s", (phone_number,)
        )
        return schemas.Contact(**row) if row else None

    def create_contact(
        self, phone_number: str, name: Optional[str], *, now: datetime
    ) -> schemas.Contact:
        try:
            # Savepoint so a unique violation leaves the outer transaction usable.
            with self._conn.transaction():
                with self._cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO contacts (phone_number, name, custom_fields, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (phone_number, name, Jsonb({}), now, now),
                    )
                    row = cur.fetchone()
        except psycopg.Error as exc:
            if is_unique_violation(exc):
                raise DuplicateContactError(
                    f"Contact with phone {phone_number} already exists",
                    details={"phone_number": phone_number},
                ) from exc
            raise PersistenceError("Failed to create contact", details=str(exc)) from exc
        return schemas.Contact(**row)

    # Conversations -------------------------------------------------------------
    def get_conversation(self, conversation_id: UUID) -> Optional[schemas.Conversation]:
        row = self._fetch_one("SELECT * FROM conversations WHERE id = %s", (conversation_id,))
        return schemas.Conversation(**row) if row else None

    def latest_conversation_for_contact(
        self, contact_id: UUID
    ) -> Optional[schemas.Conversation]:
        row = self._fetch_one(
            """
            SELECT * FROM conversations
            WHERE contact_id = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (contact_id,),
        )
        return schemas.Conversation(**row) if row else None

    def create_conversation(
        self,
        contact_id: UUID,
        *,
        now: datetime,
        status: schemas.ConversationStatus = schemas.ConversationStatus.OPEN,
        visibility: schemas.Visibility = schemas.Visibility.ACTIVE,
        created_by_campaign: Optional[UUID] = None,
    ) -> schemas.Conversation:
        row = self._fetch_one(
            """
            INSERT INTO conversations
                (contact_id, status, visibility, created_by_campaign, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (contact_id, status.value, visibility.value, created_by_campaign, now, now),
        )
        return schemas.Conversation(**row)

    def apply_window_transition(
        self, conversation_id: UUID, transition: WindowTransition
    ) -> schemas.Conversation:
        row = self._fetch_one(
            """
            UPDATE conversations
            SET status = %s,
                visibility = %s,
                last_customer_message_at = %s,
                window_expires_at = %s,
                activated_at = COALESCE(activated_at, %s),
                updated_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (
                transition.status.value,
                transition.visibility.value,
                transition.last_customer_message_at,
                transition.window_expires_at,
                transition.activated_at,
                transition.last_customer_message_at,
                conversation_id,
            ),
        )
        if row is None:
            raise PersistenceError(f"Conversation {conversation_id} disappeared")
        return schemas.Conversation(**row)

    def touch_conversation(
        self,
        conversation_id: UUID,
        *,
        last_message_at: datetime,
        status: Optional[schemas.ConversationStatus] = None,
    ) -> None:
        self._fetch_one(
            """
            UPDATE conversations
            SET last_message_at = %s,
                status = COALESCE(%s, status),
                updated_at = %s
            WHERE id = %s
            RETURNING id
            """,
            (last_message_at, status.value if status else None, last_message_at, conversation_id),
        )

    def close_expired(self, now: datetime) -> List[UUID]:
        # The expiry predicate is evaluated by the UPDATE itself so a row
        # reopened after selection keeps its fresh window.
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    UPDATE conversations
                    SET status = 'closed', updated_at = %s
                    WHERE window_expires_at < %s AND status <> 'closed'
                    RETURNING id
                    """,
                    (now, now),
                )
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise PersistenceError("Failed to close expired conversations", details=str(exc)) from exc
        return [row["id"] for row in rows]

    def list_window_candidates(
        self, *, expires_before: datetime, include_expired: bool, now: datetime
    ) -> List[UUID]:
        if include_expired:
            query = """
                SELECT id FROM conversations
                WHERE status <> 'closed' AND window_expires_at < %s
                ORDER BY window_expires_at
            """
            params: tuple = (now,)
        else:
            query = """
                SELECT id FROM conversations
                WHERE status = 'open' AND window_expires_at >= %s AND window_expires_at <= %s
                ORDER BY window_expires_at
            """
            params = (now, expires_before)
        with self._cursor() as cur:
            cur.execute(query, params)
            return [row["id"] for row in cur.fetchall()]

    def campaign_conversation_stats(self, campaign_id: UUID) -> CampaignConversationStats:
        row = self._fetch_one(
            """
            SELECT count(*) AS total,
                   count(*) FILTER (WHERE visibility = 'active') AS activated,
                   count(*) FILTER (WHERE visibility = 'dormant') AS dormant
            FROM conversations
            WHERE created_by_campaign = %s
            """,
            (campaign_id,),
        )
        return CampaignConversationStats(
            total=row["total"], activated=row["activated"], dormant=row["dormant"]
        )

    # Messages ----------------------------------------------------------------
    def add_message(
        self,
        conversation_id: UUID,
        *,
        direction: schemas.MessageDirection,
        message_type: schemas.MessageType,
        content: str,
        created_at: datetime,
        media_url: Optional[str] = None,
        media_content_type: Optional[str] = None,
        message_sid: Optional[str] = None,
        provider_status: Optional[str] = None,
        sent_by: Optional[str] = None,
    ) -> schemas.Message:
        row = self._fetch_one(
            """
            INSERT INTO messages
                (conversation_id, direction, message_type, content, media_url,
                 media_content_type, message_sid, provider_status, sent_by, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                conversation_id,
                direction.value,
                message_type.value,
                content,
                media_url,
                media_content_type,
                message_sid,
                provider_status,
                sent_by,
                created_at,
            ),
        )
        return schemas.Message(**row)

    def get_message_by_sid(self, message_sid: str) -> Optional[schemas.Message]:
        row = self._fetch_one("SELECT * FROM messages WHERE message_sid = %s", (message_sid,))
        return schemas.Message(**row) if row else None

    def list_messages(self, conversation_id: UUID, limit: int = 100) -> List[schemas.Message]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = %s
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (conversation_id, limit),
            )
            rows = cur.fetchall()
        return [schemas.Message(**row) for row in rows]


class InMemoryConversationRepository:
    """Dictionary-backed repository used by tests and local tooling."""

    def __init__(self) -> None:
        self.contacts: Dict[UUID, schemas.Contact] = {}
        self.conversations: Dict[UUID, schemas.Conversation] = {}
        self.messages: Dict[UUID, schemas.Message] = {}

    # Contacts ----------------------------------------------------------------
    def get_contact(self, contact_id: UUID) -> Optional[schemas.Contact]:
        return self.contacts.get(contact_id)

    def get_contact_by_phone(self, phone_number: str) -> Optional[schemas.Contact]:
        for contact in self.contacts.values():
            if contact.phone_number == phone_number:
                return contact
        return None

    def create_contact(
        self, phone_number: str, name: Optional[str], *, now: datetime
    ) -> schemas.Contact:
        if self.get_contact_by_phone(phone_number) is not None:
            raise DuplicateContactError(
                f"Contact with phone {phone_number} already exists",
                details={"phone_number": phone_number},
            )
        contact = schemas.Contact(
            id=uuid.uuid4(), phone_number=phone_number, name=name, created_at=now
        )
        self.contacts[contact.id] = contact
        return contact

    def add_contact(self, contact: schemas.Contact) -> schemas.Contact:
        self.contacts[contact.id] = contact
        return contact

    # Conversations -------------------------------------------------------------
    def get_conversation(self, conversation_id: UUID) -> Optional[schemas.Conversation]:
        return self.conversations.get(conversation_id)

    def latest_conversation_for_contact(
        self, contact_id: UUID
    ) -> Optional[schemas.Conversation]:
        candidates = [c for c in self.conversations.values() if c.contact_id == contact_id]
        if not candidates:
            return None
        return max(candidates, key=lambda c: c.created_at)

    def create_conversation(
        self,
        contact_id: UUID,
        *,
        now: datetime,
        status: schemas.ConversationStatus = schemas.ConversationStatus.OPEN,
        visibility: schemas.Visibility = schemas.Visibility.ACTIVE,
        created_by_campaign: Optional[UUID] = None,
    ) -> schemas.Conversation:
        conversation = schemas.Conversation(
            id=uuid.uuid4(),
            contact_id=contact_id,
            status=status,
            visibility=visibility,
            created_by_campaign=created_by_campaign,
            created_at=now,
            updated_at=now,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    def apply_window_transition(
        self, conversation_id: UUID, transition: WindowTransition
    ) -> schemas.Conversation:
        current = self.conversations[conversation_id]
        updated = current.model_copy(
            update={
                "status": transition.status,
                "visibility": transition.visibility,
                "last_customer_message_at": transition.last_customer_message_at,
                "window_expires_at": transition.window_expires_at,
                "activated_at": current.activated_at or transition.activated_at,
                "updated_at": transition.last_customer_message_at,
            }
        )
        self.conversations[conversation_id] = updated
        return updated

    def touch_conversation(
        self,
        conversation_id: UUID,
        *,
        last_message_at: datetime,
        status: Optional[schemas.ConversationStatus] = None,
    ) -> None:
        current = self.conversations.get(conversation_id)
        if current is None:
            return
        update: Dict[str, Any] = {"last_message_at": last_message_at, "updated_at": last_message_at}
        if status is not None:
            update["status"] = status
        self.conversations[conversation_id] = current.model_copy(update=update)

    def close_expired(self, now: datetime) -> List[UUID]:
        closed: List[UUID] = []
        for conversation_id, conversation in list(self.conversations.items()):
            if (
                conversation.window_expires_at is not None
                and conversation.window_expires_at < now
                and conversation.status != schemas.ConversationStatus.CLOSED
            ):
                self.conversations[conversation_id] = conversation.model_copy(
                    update={"status": schemas.ConversationStatus.CLOSED, "updated_at": now}
                )
                closed.append(conversation_id)
        return closed

    def list_window_candidates(
        self, *, expires_before: datetime, include_expired: bool, now: datetime
    ) -> List[UUID]:
        result = []
        for conversation in self.conversations.values():
            expires = conversation.window_expires_at
            if expires is None:
                continue
            if include_expired:
                if conversation.status != schemas.ConversationStatus.CLOSED and expires < now:
                    result.append(conversation)
            elif (
                conversation.status == schemas.ConversationStatus.OPEN
                and now <= expires <= expires_before
            ):
                result.append(conversation)
        result.sort(key=lambda c: c.window_expires_at)
        return [c.id for c in result]

    def campaign_conversation_stats(self, campaign_id: UUID) -> CampaignConversationStats:
        tagged = [
            c for c in self.conversations.values() if c.created_by_campaign == campaign_id
        ]
        activated = sum(1 for c in tagged if c.visibility == schemas.Visibility.ACTIVE)
        return CampaignConversationStats(
            total=len(tagged), activated=activated, dormant=len(tagged) - activated
        )

    # Messages ----------------------------------------------------------------
    def add_message(
        self,
        conversation_id: UUID,
        *,
        direction: schemas.MessageDirection,
        message_type: schemas.MessageType,
        content: str,
        created_at: datetime,
        media_url: Optional[str] = None,
        media_content_type: Optional[str] = None,
        message_sid: Optional[str] = None,
        provider_status: Optional[str] = None,
        sent_by: Optional[str] = None,
    ) -> schemas.Message:
        if message_sid and self.get_message_by_sid(message_sid) is not None:
            raise PersistenceError(f"Message {message_sid} already stored")
        message = schemas.Message(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            direction=direction,
            message_type=message_type,
            content=content,
            media_url=media_url,
            media_content_type=media_content_type,
            message_sid=message_sid,
            provider_status=provider_status,
            sent_by=sent_by,
            created_at=created_at,
        )
        self.messages[message.id] = message
        return message

    def get_message_by_sid(self, message_sid: str) -> Optional[schemas.Message]:
        for message in self.messages.values():
            if message.message_sid == message_sid:
                return message
        return None

    def list_messages(self, conversation_id: UUID, limit: int = 100) -> List[schemas.Message]:
        items = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        items.sort(key=lambda m: m.created_at)
        return items[:limit]
