"""Media allow-lists and validation shared by inbound, outbound and upload paths."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import urlparse

from .conversations.models import MediaAttachment
from .conversations.schemas import MessageType
from .core.errors import MediaValidationError

MAX_MEDIA_SIZE = 20 * 1024 * 1024

ALLOWED_CONTENT_TYPES = frozenset(
    {
        # Images
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/bmp",
        # Videos
        "video/mp4",
        "video/webm",
        "video/avi",
        "video/mov",
        "video/quicktime",
        # Audio
        "audio/mpeg",
        "audio/mp3",
        "audio/wav",
        "audio/ogg",
        "audio/m4a",
        "audio/mp4",
        # Documents
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/plain",
        "text/csv",
    }
)

DEFAULT_CONTENT_TYPES = {
    MessageType.IMAGE: "image/jpeg",
    MessageType.VIDEO: "video/mp4",
    MessageType.AUDIO: "audio/mpeg",
    MessageType.DOCUMENT: "application/pdf",
}

_PREFIXES = {
    MessageType.IMAGE: "image/",
    MessageType.VIDEO: "video/",
    MessageType.AUDIO: "audio/",
}


def normalize_content_type(content_type: str | None) -> str:
    """Lowercase and strip parameters such as ``; charset=utf-8``."""

    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_allowed_content_type(content_type: str | None) -> bool:
    return normalize_content_type(content_type) in ALLOWED_CONTENT_TYPES


def derive_message_type(content_type: str | None) -> MessageType:
    normalized = normalize_content_type(content_type)
    for message_type, prefix in _PREFIXES.items():
        if normalized.startswith(prefix):
            return message_type
    return MessageType.DOCUMENT


def primary_attachment(media: Iterable[MediaAttachment]) -> MediaAttachment | None:
    """Return the first attachment whose content type is allow-listed."""

    for attachment in media:
        if attachment.url and is_allowed_content_type(attachment.content_type):
            return attachment
    return None


def placeholder_text(message_type: MessageType) -> str:
    return f"{message_type.value.capitalize()} message"


@dataclass(frozen=True)
class OutboundMedia:
    url: str
    content_type: str


def validate_outbound_media(
    message_type: MessageType,
    media_url: str | None,
    media_content_type: str | None,
) -> OutboundMedia | None:
    """Check a media reference for an outbound send.

    Text messages carry no media. Every other type needs an http(s) URL and,
    when a content type is given, it has to agree with the message type.
    Returns ``None`` for text sends.
    """

    if message_type == MessageType.TEXT:
        return None
    if not media_url:
        raise MediaValidationError(
            f"A media URL is required for {message_type.value} messages",
            details={"message_type": message_type.value},
        )
    parsed = urlparse(media_url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise MediaValidationError(
            "Invalid media URL format",
            details="Media URL must be a valid HTTP/HTTPS URL",
        )
    content_type = normalize_content_type(media_content_type)
    if not content_type:
        return OutboundMedia(url=media_url, content_type=DEFAULT_CONTENT_TYPES[message_type])
    prefix = _PREFIXES.get(message_type)
    if prefix and not content_type.startswith(prefix):
        raise MediaValidationError(
            f"Content type {content_type} does not match {message_type.value} messages",
            details={"message_type": message_type.value, "content_type": content_type},
        )
    return OutboundMedia(url=media_url, content_type=content_type)


def validate_upload(content_type: str | None, size: int, max_size: int = MAX_MEDIA_SIZE) -> MessageType:
    """Validate an uploaded file and return the message type it would be sent as."""

    if size <= 0:
        raise MediaValidationError("File is empty")
    if size > max_size:
        raise MediaValidationError(
            f"File size exceeds {max_size // (1024 * 1024)}MB limit",
            details={"size": size, "max_size": max_size},
        )
    if not is_allowed_content_type(content_type):
        raise MediaValidationError(
            f"File type {content_type} not supported",
            details={"allowed_types": sorted(ALLOWED_CONTENT_TYPES)},
        )
    return derive_message_type(content_type)
