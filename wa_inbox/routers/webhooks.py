"""Provider webhook routes: inbound customer messages and delivery reports.

Both endpoints acknowledge with ``200 OK`` whatever happens internally: the
provider retries non-2xx answers, which would replay messages that were
already half-processed. Failures are logged instead. The only rejection is
an invalid request signature when validation is enabled.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import NamedTuple
from urllib.parse import parse_qsl

import psycopg
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from ..campaigns.models import StatusCallback
from ..campaigns.reconciler import DeliveryReconciler
from ..campaigns.repository import CampaignRepository, PostgresCampaignRepository
from ..channels import get_adapter
from ..conversations.inbound import InboundProcessor
from ..conversations.models import InboundMessage
from ..conversations.repository import (
    ConversationRepository,
    PostgresConversationRepository,
)
from ..core import db
from ..core.config import get_settings
from ..core.errors import AuthError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

ACK = "OK"


class WebhookRepositories(NamedTuple):
    conversations: ConversationRepository
    campaigns: CampaignRepository


class _Discard(Exception):
    """Roll back the current webhook transaction without failing the request."""


def _get_conn() -> psycopg.Connection:
    return db.connect()


@contextmanager
def _service_context() -> Iterator[WebhookRepositories]:
    conn = _get_conn()
    try:
        yield WebhookRepositories(
            PostgresConversationRepository(conn), PostgresCampaignRepository(conn)
        )
        conn.commit()
    except _Discard:
        conn.rollback()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


async def _read_form(request: Request) -> dict[str, str]:
    body = await request.body()
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))


def _signed_url(request: Request) -> str:
    """URL the provider signed: the public base when configured, else as received."""
    base = get_settings().public_base_url
    if not base:
        return str(request.url)
    url = base.rstrip("/") + request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def _verify(request: Request, form: dict[str, str]) -> None:
    adapter = get_adapter()
    if not adapter.verify_signature(_signed_url(request), form, request.headers):
        logger.warning("Rejected webhook with invalid signature on %s", request.url.path)
        raise AuthError(
            "Invalid provider signature", code="INVALID_SIGNATURE", status_code=403
        )


def _process_inbound(messages: list[InboundMessage]) -> None:
    window = timedelta(hours=get_settings().window_hours)
    for inbound in messages:
        try:
            with _service_context() as repos:
                result = InboundProcessor(repos.conversations, window=window).process(inbound)
                if not result.processed:
                    raise _Discard()
        except Exception:
            logger.exception("Inbound webhook failed for %s", inbound.message_sid)
            continue
        if result.duplicate:
            logger.info("Duplicate inbound %s acknowledged", inbound.message_sid)


def _process_status(callback: StatusCallback) -> None:
    try:
        with _service_context() as repos:
            DeliveryReconciler(repos.campaigns).apply(callback)
    except Exception:
        logger.exception("Status webhook failed for %s", callback.message_sid)


@router.post("/api/webhooks/twilio/incoming", response_class=PlainTextResponse)
async def twilio_incoming(request: Request) -> PlainTextResponse:
    """Record inbound WhatsApp messages delivered by the provider."""
    form = await _read_form(request)
    _verify(request, form)
    try:
        messages = list(get_adapter().parse_incoming(form))
    except Exception:
        logger.exception("Could not parse inbound webhook payload")
        return PlainTextResponse(ACK)
    if not messages:
        logger.info("Inbound webhook without a sender; ignoring")
        return PlainTextResponse(ACK)
    await run_in_threadpool(_process_inbound, messages)
    return PlainTextResponse(ACK)


@router.post("/api/webhooks/twilio/status", response_class=PlainTextResponse)
async def twilio_status(request: Request) -> PlainTextResponse:
    """Apply a delivery-status report to the matching campaign message."""
    form = await _read_form(request)
    _verify(request, form)
    try:
        callback = get_adapter().parse_status(form)
    except Exception:
        logger.exception("Could not parse status webhook payload")
        return PlainTextResponse(ACK)
    if callback is None:
        logger.debug("Status webhook without message id or status; ignoring")
        return PlainTextResponse(ACK)
    await run_in_threadpool(_process_status, callback)
    return PlainTextResponse(ACK)
