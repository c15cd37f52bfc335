"""Conversation API routes: agent replies, window state and the expiry sweep."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from uuid import UUID

import psycopg
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ..conversations import schemas as convo_schemas
from ..conversations.gateway import OutboundGateway
from ..conversations.repository import (
    ConversationRepository,
    PostgresConversationRepository,
)
from ..conversations.window import WindowManager
from ..core import db
from ..core.auth import AccessTokenPayload, get_current_user, require_cron_secret
from ..core.config import get_settings
from ..core.errors import NotFoundError
from ..core.ratelimit import limiter
from ..transport import get_transport

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


class ConversationDetail(BaseModel):
    conversation: convo_schemas.Conversation
    contact: convo_schemas.Contact | None = None
    messages: list[convo_schemas.Message]
    window: convo_schemas.WindowState


def _get_conn() -> psycopg.Connection:
    return db.connect()


@contextmanager
def _service_context() -> Iterator[ConversationRepository]:
    conn = _get_conn()
    try:
        yield PostgresConversationRepository(conn)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _window_manager(repo: ConversationRepository) -> WindowManager:
    return WindowManager(repo, window=timedelta(hours=get_settings().window_hours))


def _require_conversation(
    repo: ConversationRepository, conversation_id: UUID
) -> convo_schemas.Conversation:
    conversation = repo.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


# Registered before ``/{conversation_id}`` so the literal path wins.
@router.post(
    "/api/conversations/auto-close",
    response_model=convo_schemas.SweepResponse,
    dependencies=[Depends(require_cron_secret)],
)
def auto_close() -> convo_schemas.SweepResponse:
    """Close every conversation whose reply window has lapsed."""
    with _service_context() as repo:
        manager = _window_manager(repo)
        now = manager.now()
        closed = manager.sweep(now)
    return convo_schemas.SweepResponse(closed_count=len(closed), timestamp=now)


@router.get(
    "/api/conversations/auto-close",
    response_model=convo_schemas.ExpiryReport,
    dependencies=[Depends(require_cron_secret)],
)
def expiry_report() -> convo_schemas.ExpiryReport:
    """Preview conversations expiring within the hour and those already expired."""
    with _service_context() as repo:
        return _window_manager(repo).expiry_report()


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=ConversationDetail,
)
def get_conversation(
    conversation_id: UUID,
    limit: int = 100,
    user: AccessTokenPayload = Depends(get_current_user),
) -> ConversationDetail:
    with _service_context() as repo:
        conversation = _require_conversation(repo, conversation_id)
        return ConversationDetail(
            conversation=conversation,
            contact=repo.get_contact(conversation.contact_id),
            messages=repo.list_messages(conversation_id, limit=limit),
            window=_window_manager(repo).window_state(conversation),
        )


@router.get(
    "/api/conversations/{conversation_id}/window",
    response_model=convo_schemas.WindowState,
)
def get_window(
    conversation_id: UUID,
    user: AccessTokenPayload = Depends(get_current_user),
) -> convo_schemas.WindowState:
    with _service_context() as repo:
        conversation = _require_conversation(repo, conversation_id)
        return _window_manager(repo).window_state(conversation)


@router.post(
    "/api/conversations/{conversation_id}/send",
    response_model=convo_schemas.SendMessageResponse,
)
@limiter.limit("60/minute")
def send_message(
    request: Request,
    conversation_id: UUID,
    payload: convo_schemas.SendMessageRequest,
    user: AccessTokenPayload = Depends(get_current_user),
) -> convo_schemas.SendMessageResponse:
    """Send a free-form reply while the customer window is open."""
    with _service_context() as repo:
        gateway = OutboundGateway(
            repo,
            get_transport(),
            status_callback=get_settings().status_callback_url,
        )
        result = gateway.send(
            conversation_id,
            payload.message,
            payload.message_type,
            payload.media_url,
            payload.media_content_type,
            sent_by=str(user["user_id"]),
        )
    return convo_schemas.SendMessageResponse(
        message_id=result.message_id,
        message_sid=result.message.message_sid or "",
        provider_status=result.provider_status,
        message=result.message,
    )
