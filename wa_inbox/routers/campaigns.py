"""Campaign API routes: creation, dispatch and reporting."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

import psycopg
from fastapi import APIRouter, Depends, status

from ..campaigns import schemas
from ..campaigns.repository import PostgresCampaignRepository
from ..campaigns.service import CampaignService
from ..conversations.repository import PostgresConversationRepository
from ..core import db
from ..core.auth import AccessTokenPayload, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["campaigns"])


def _get_conn() -> psycopg.Connection:
    return db.connect()


@contextmanager
def _service_context() -> Iterator[CampaignService]:
    conn = _get_conn()
    try:
        yield CampaignService(
            PostgresCampaignRepository(conn), PostgresConversationRepository(conn)
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@router.post(
    "/api/campaigns",
    response_model=schemas.CampaignCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_campaign(
    payload: schemas.CampaignCreateRequest,
    user: AccessTokenPayload = Depends(get_current_user),
) -> schemas.CampaignCreateResponse:
    """Create a campaign; immediate campaigns start dispatching right away."""
    job = None
    with _service_context() as service:
        campaign = service.create_campaign(payload, created_by=str(user["user_id"]))
        if payload.schedule_type == schemas.ScheduleType.IMMEDIATE:
            campaign, job = service.start_dispatch(campaign.id)
    # Submitted only after commit so the worker sees the running campaign.
    if job is not None:
        service.launch(job)
    return schemas.CampaignCreateResponse(campaign=campaign, dispatch_job=job)


@router.post(
    "/api/campaigns/{campaign_id}/send",
    response_model=schemas.CampaignCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def send_campaign(
    campaign_id: UUID,
    payload: schemas.CampaignSendRequest | None = None,
    user: AccessTokenPayload = Depends(get_current_user),
) -> schemas.CampaignCreateResponse:
    """Start dispatching a draft or scheduled campaign in the background."""
    payload = payload or schemas.CampaignSendRequest()
    with _service_context() as service:
        campaign, job = service.start_dispatch(
            campaign_id, batch_size=payload.batch_size, delay_ms=payload.delay_ms
        )
    service.launch(job)
    logger.info("Campaign %s dispatch requested by %s", campaign_id, user["user_id"])
    return schemas.CampaignCreateResponse(campaign=campaign, dispatch_job=job)


@router.get("/api/campaigns/{campaign_id}", response_model=schemas.Campaign)
def get_campaign(
    campaign_id: UUID,
    user: AccessTokenPayload = Depends(get_current_user),
) -> schemas.Campaign:
    with _service_context() as service:
        return service.get_campaign(campaign_id)


@router.get(
    "/api/campaigns/{campaign_id}/dispatch-jobs/{job_id}",
    response_model=schemas.DispatchJob,
)
def get_dispatch_job(
    campaign_id: UUID,
    job_id: UUID,
    user: AccessTokenPayload = Depends(get_current_user),
) -> schemas.DispatchJob:
    with _service_context() as service:
        return service.get_job(campaign_id, job_id)


@router.get(
    "/api/campaigns/{campaign_id}/analytics",
    response_model=schemas.CampaignAnalytics,
)
def get_analytics(
    campaign_id: UUID,
    user: AccessTokenPayload = Depends(get_current_user),
) -> schemas.CampaignAnalytics:
    with _service_context() as service:
        return service.get_analytics(campaign_id)


@router.get(
    "/api/campaigns/{campaign_id}/activation-stats",
    response_model=schemas.ActivationStats,
)
def get_activation_stats(
    campaign_id: UUID,
    user: AccessTokenPayload = Depends(get_current_user),
) -> schemas.ActivationStats:
    with _service_context() as service:
        return service.activation_stats(campaign_id)
