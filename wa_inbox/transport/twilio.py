"""Twilio Programmable Messaging transport for WhatsApp."""

from __future__ import annotations

import json
import logging
from typing import Any

import requests

from ..core.errors import (
    BodyRequiredError,
    MessageTooLargeError,
    TransportError,
    TransportPermissionError,
    UnknownRecipientError,
    UnsupportedMediaTypeError,
)
from .base import OutboundMessage, TransportResult, to_whatsapp_address

TIMEOUT = (5, 15)  # connect, read

# Twilio error code -> (error class, operator-facing message)
TWILIO_ERROR_MAP: dict[int, tuple[type[TransportError], str]] = {
    21408: (
        TransportPermissionError,
        "Permission to send media is not enabled for this number",
    ),
    21623: (MessageTooLargeError, "Media file size exceeds limit (20MB)"),
    21624: (UnsupportedMediaTypeError, "Media file type not supported by WhatsApp"),
    21610: (UnknownRecipientError, "Message cannot be sent to this WhatsApp number"),
    21614: (BodyRequiredError, "Message body is required when not sending media"),
    63016: (
        UnsupportedMediaTypeError,
        "Media URL could not be accessed or downloaded",
    ),
    63017: (UnsupportedMediaTypeError, "Media file is corrupted or invalid"),
    30008: (
        UnknownRecipientError,
        "Unknown WhatsApp recipient - number may not be registered",
    ),
}


def map_twilio_error(
    code: Any, message: str | None = None, more_info: str | None = None
) -> TransportError:
    """Translate a Twilio error code into the transport error taxonomy."""

    try:
        numeric = int(code)
    except (TypeError, ValueError):
        numeric = None
    mapped = TWILIO_ERROR_MAP.get(numeric) if numeric is not None else None
    if mapped is None:
        return TransportError(
            message or "Failed to send message",
            provider_code=code,
            details=message,
            more_info=more_info,
        )
    error_cls, text = mapped
    return error_cls(text, provider_code=numeric, details=message, more_info=more_info)


class TwilioTransport:
    """Send WhatsApp messages through the Twilio Messages REST resource."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        api_base: str = "https://api.twilio.com/2010-04-01",
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not account_sid or not auth_token or not from_number:
            raise TransportError(
                "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_WHATSAPP_NUMBER must be set",
                code="TRANSPORT_NOT_CONFIGURED",
                status_code=500,
            )
        self.account_sid = account_sid
        self.from_address = to_whatsapp_address(from_number)
        self.session = session or requests.Session()
        self.session.auth = (account_sid, auth_token)
        self.logger = logger or logging.getLogger(__name__)
        self._url = f"{api_base.rstrip('/')}/Accounts/{account_sid}/Messages.json"

    def _form(self, message: OutboundMessage) -> list[tuple[str, str]]:
        form: list[tuple[str, str]] = [
            ("From", self.from_address),
            ("To", to_whatsapp_address(message.to)),
        ]
        if message.content_sid:
            form.append(("ContentSid", message.content_sid))
            if message.content_variables:
                form.append(("ContentVariables", json.dumps(message.content_variables)))
        else:
            if message.body:
                form.append(("Body", message.body))
            form.extend(("MediaUrl", url) for url in message.media_urls)
        if message.status_callback:
            form.append(("StatusCallback", message.status_callback))
        return form

    def send(self, message: OutboundMessage) -> TransportResult:
        try:
            response = self.session.request(
                "POST", self._url, data=self._form(message), timeout=TIMEOUT
            )
        except requests.RequestException as exc:
            self.logger.error("Twilio request failed: %s", exc)
            raise TransportError("Could not reach Twilio", details=str(exc)) from exc

        try:
            data = response.json()
        except ValueError:
            data = {"message": response.text}

        if response.status_code >= 400:
            self.logger.warning(
                "Twilio rejected message to %s: status=%s code=%s",
                message.to,
                response.status_code,
                data.get("code"),
            )
            raise map_twilio_error(data.get("code"), data.get("message"), data.get("more_info"))

        return TransportResult(id=str(data.get("sid", "")), status=str(data.get("status", "queued")))
