"""Bearer-token authentication for agent-facing endpoints and the cron sweep."""

from __future__ import annotations

import hmac
import os
from typing import TypedDict, cast

import jwt
from fastapi import Request
from jwt import ExpiredSignatureError, InvalidTokenError

from .config import get_settings
from .errors import AuthError, MessagingError

__all__ = [
    "AccessTokenPayload",
    "decode_access_token",
    "get_current_user",
    "require_cron_secret",
]


class _RequiredClaims(TypedDict):
    user_id: str


class AccessTokenPayload(_RequiredClaims, total=False):
    """Decoded JWT payload identifying the agent making a request."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    roles: list[str]


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise MessagingError(
            f"Environment variable '{name}' must be set for token validation.",
            code="AUTH_NOT_CONFIGURED",
        )
    if value is None:
        return ""
    return value.strip()


def decode_access_token(token: str) -> AccessTokenPayload:
    """Decode and validate an access token.

    Raises:
        MessagingError: When the signing configuration is missing (500).
        AuthError: When signature, claims or expiry are invalid (401).
    """

    secret_key = _get_env("AUTH_TOKEN_SECRET")
    audience = _get_env("AUTH_TOKEN_AUDIENCE")
    issuer = _get_env("AUTH_TOKEN_ISSUER")
    algorithm = _get_env("AUTH_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise AuthError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise AuthError("Access token is invalid.") from exc

    if "user_id" not in payload:
        raise AuthError("Access token payload must include 'user_id'.")
    return cast(AccessTokenPayload, payload)


def _bearer_credentials(request: Request) -> str:
    authorization = request.headers.get("Authorization")
    if not authorization:
        raise AuthError("Missing Authorization header.")
    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise AuthError("Authorization header must use Bearer scheme.")
    return credentials.strip()


async def get_current_user(request: Request) -> AccessTokenPayload:
    """FastAPI dependency returning the authenticated agent's token payload."""

    return decode_access_token(_bearer_credentials(request))


async def require_cron_secret(request: Request) -> None:
    """Guard scheduler-invoked endpoints with ``CRON_SECRET`` when it is set."""

    secret = get_settings().cron_secret
    if not secret:
        return
    provided = _bearer_credentials(request)
    if not hmac.compare_digest(provided, secret):
        raise AuthError("Invalid cron secret.")
