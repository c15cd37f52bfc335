"""Error taxonomy shared by services, routers and background jobs.

Every error carries a machine-readable ``code`` and the HTTP status it maps
to, so routers can turn any of them into a ``{error, code, details}`` body
without knowing which component raised it.
"""

from __future__ import annotations

from typing import Any


class MessagingError(RuntimeError):
    """Base class for domain errors raised by the messaging core."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: Any = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class AuthError(MessagingError):
    status_code = 401
    code = "UNAUTHENTICATED"


class NotFoundError(MessagingError):
    status_code = 404
    code = "NOT_FOUND"


class ValidationError(MessagingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class MediaValidationError(ValidationError):
    code = "MEDIA_VALIDATION_FAILED"


class StateConflictError(MessagingError):
    status_code = 400
    code = "STATE_CONFLICT"


class ConversationClosedError(StateConflictError):
    code = "CONVERSATION_CLOSED"


class WindowExpiredError(StateConflictError):
    code = "WINDOW_EXPIRED"


class TemplateNotApprovedError(StateConflictError):
    code = "TEMPLATE_NOT_APPROVED"


class DuplicateContactError(StateConflictError):
    status_code = 409
    code = "DUPLICATE_PHONE"


class PersistenceError(MessagingError):
    code = "PERSISTENCE_ERROR"


class TransportError(MessagingError):
    """The provider rejected a send, or could not be reached."""

    code = "TRANSPORT_ERROR"

    def __init__(
        self,
        message: str,
        *,
        provider_code: str | int | None = None,
        more_info: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.provider_code = str(provider_code) if provider_code is not None else None
        self.more_info = more_info

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.provider_code is not None:
            payload["code"] = self.provider_code
        payload["moreInfo"] = self.more_info
        return payload


class TransportPermissionError(TransportError):
    status_code = 403
    code = "PERMISSION_DENIED"


class MessageTooLargeError(TransportError):
    status_code = 400
    code = "MEDIA_TOO_LARGE"


class UnsupportedMediaTypeError(TransportError):
    status_code = 400
    code = "UNSUPPORTED_MEDIA_TYPE"


class UnknownRecipientError(TransportError):
    status_code = 400
    code = "UNKNOWN_RECIPIENT"


class BodyRequiredError(TransportError):
    status_code = 400
    code = "BODY_REQUIRED"


__all__ = [
    "AuthError",
    "BodyRequiredError",
    "ConversationClosedError",
    "DuplicateContactError",
    "MediaValidationError",
    "MessageTooLargeError",
    "MessagingError",
    "NotFoundError",
    "PersistenceError",
    "StateConflictError",
    "TemplateNotApprovedError",
    "TransportError",
    "TransportPermissionError",
    "UnknownRecipientError",
    "UnsupportedMediaTypeError",
    "ValidationError",
    "WindowExpiredError",
]
