"""Twilio WhatsApp webhook adapter."""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Iterable, Mapping

from ..campaigns.models import StatusCallback
from ..conversations.models import InboundMessage, MediaAttachment
from ..transport.base import strip_whatsapp_prefix
from .base import ChannelAdapter


def compute_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Twilio request signature: base64 HMAC-SHA1 of URL plus sorted params."""

    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1)
    return base64.b64encode(digest.digest()).decode("ascii")


class TwilioWhatsAppAdapter(ChannelAdapter):
    channel_name = "twilio"

    def __init__(self, *, auth_token: str | None = None, validate: bool = False) -> None:
        self.auth_token = auth_token
        self.validate = validate

    def verify_signature(
        self,
        url: str,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> bool:
        if not self.validate:
            return True
        if not self.auth_token:
            return False
        received = headers.get("X-Twilio-Signature")
        if not received:
            return False
        expected = compute_signature(self.auth_token, url, params)
        return hmac.compare_digest(received, expected)

    def parse_incoming(self, payload: Mapping[str, str]) -> Iterable[InboundMessage]:
        sender = strip_whatsapp_prefix(payload.get("From", ""))
        if not sender:
            return []
        try:
            num_media = int(payload.get("NumMedia") or 0)
        except ValueError:
            num_media = 0
        media = []
        for index in range(num_media):
            url = payload.get(f"MediaUrl{index}")
            if not url:
                continue
            media.append(
                MediaAttachment(
                    url=url,
                    content_type=payload.get(f"MediaContentType{index}", ""),
                )
            )
        to = payload.get("To")
        return [
            InboundMessage(
                message_sid=payload.get("MessageSid") or payload.get("SmsMessageSid", ""),
                from_phone=sender,
                to_phone=strip_whatsapp_prefix(to) if to else None,
                body=payload.get("Body", "") or "",
                media=media,
                profile_name=payload.get("ProfileName") or None,
                wa_id=payload.get("WaId") or None,
            )
        ]

    def parse_status(self, payload: Mapping[str, str]) -> StatusCallback | None:
        message_sid = payload.get("MessageSid")
        status = payload.get("MessageStatus")
        # WhatsApp read receipts arrive as EventType=READ.
        if (payload.get("EventType") or "").upper() == "READ":
            status = "read"
        if not message_sid or not status:
            return None
        return StatusCallback(
            message_sid=message_sid,
            status=status.lower(),
            error_code=payload.get("ErrorCode") or None,
            error_message=payload.get("ErrorMessage") or None,
        )
