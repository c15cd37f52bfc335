"""Media upload route used by agents before sending attachments."""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Annotated
from uuid import UUID, uuid4

import psycopg
from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..conversations import schemas as convo_schemas
from ..conversations.repository import (
    ConversationRepository,
    PostgresConversationRepository,
)
from ..core import db
from ..core.auth import AccessTokenPayload, get_current_user
from ..core.config import get_settings
from ..core.errors import ConversationClosedError, NotFoundError
from ..core.ratelimit import limiter
from ..media import normalize_content_type, validate_upload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["media"])


class UploadedMedia(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    url: str
    content_type: str
    derived_message_type: convo_schemas.MessageType
    size: int
    filename: str


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


def _check_conversation(conversation_id: UUID) -> None:
    with _service_context() as repo:
        conversation = repo.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    if conversation.status == convo_schemas.ConversationStatus.CLOSED:
        raise ConversationClosedError("Cannot upload media to a closed conversation")


def _public_url(path: str) -> str:
    base = get_settings().public_base_url
    return f"{base.rstrip('/')}{path}" if base else path


@router.post("/api/upload/media", response_model=UploadedMedia)
@limiter.limit("30/minute")
async def upload_media(
    request: Request,
    file: Annotated[UploadFile, File(...)],
    conversation_id: Annotated[UUID | None, Form(alias="conversationId")] = None,
    user: AccessTokenPayload = Depends(get_current_user),
) -> UploadedMedia:
    """Store an attachment under ``UPLOAD_DIR`` and return its public URL.

    The file is validated against the media allow-list and size limit. When a
    conversation is given it must exist and not be closed.
    """
    settings = get_settings()
    contents = await file.read()
    content_type = normalize_content_type(file.content_type)
    message_type = validate_upload(content_type, len(contents), settings.media_max_size)
    if conversation_id is not None:
        _check_conversation(conversation_id)

    original = os.path.basename(file.filename or "upload")
    filename = f"{uuid4().hex}-{original}"
    os.makedirs(settings.upload_dir, exist_ok=True)
    with open(os.path.join(settings.upload_dir, filename), "wb") as f:
        f.write(contents)
    logger.info(
        "Stored %s upload %s (%d bytes) for %s",
        message_type.value,
        filename,
        len(contents),
        user["user_id"],
    )
    return UploadedMedia(
        url=_public_url(f"/uploads/{filename}"),
        content_type=content_type,
        derived_message_type=message_type,
        size=len(contents),
        filename=original,
    )
