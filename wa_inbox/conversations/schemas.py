"""Pydantic schemas for contacts, conversations and messages."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ConversationStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    CLOSED = "closed"


class Visibility(str, Enum):
    ACTIVE = "active"
    DORMANT = "dormant"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class Contact(BaseModel):
    id: UUID
    phone_number: str
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    company_name: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class Conversation(BaseModel):
    id: UUID
    contact_id: UUID
    status: ConversationStatus = ConversationStatus.OPEN
    visibility: Visibility = Visibility.ACTIVE
    last_message_at: datetime | None = None
    last_customer_message_at: datetime | None = None
    window_expires_at: datetime | None = None
    created_by_campaign: UUID | None = None
    activated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None


class Message(BaseModel):
    id: UUID
    conversation_id: UUID
    direction: MessageDirection
    message_type: MessageType = MessageType.TEXT
    content: str = ""
    media_url: str | None = None
    media_content_type: str | None = None
    message_sid: str | None = None
    provider_status: str | None = None
    sent_by: str | None = None
    created_at: datetime


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str = Field(default="", max_length=4096)
    message_type: MessageType = MessageType.TEXT
    media_url: str | None = None
    media_content_type: str | None = None


class SendMessageResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    message_id: UUID
    message_sid: str
    provider_status: str
    message: Message


class WindowState(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    conversation_id: UUID
    status: ConversationStatus
    visibility: Visibility
    is_within_window: bool
    window_expires_at: datetime | None = None
    seconds_remaining: int = 0


class SweepResponse(BaseModel):
    success: bool = True
    closed_count: int = Field(serialization_alias="closedCount")
    timestamp: datetime


class ExpiryReport(BaseModel):
    expiring_soon: list[UUID] = Field(default_factory=list, serialization_alias="expiringSoon")
    already_expired: list[UUID] = Field(
        default_factory=list, serialization_alias="alreadyExpired"
    )
    expiring_soon_count: int = Field(0, serialization_alias="expiringSoonCount")
    already_expired_count: int = Field(0, serialization_alias="alreadyExpiredCount")
    timestamp: datetime
