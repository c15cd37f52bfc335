"""Campaign lifecycle: creation, background dispatch and reporting."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from uuid import UUID

from ..app_logging import close_job_logging, setup_job_logging
from ..conversations.repository import (
    ConversationRepository,
    PostgresConversationRepository,
)
from ..conversations.window import utcnow
from ..core import db
from ..core.config import Settings, get_settings
from ..core.errors import (
    NotFoundError,
    StateConflictError,
    TemplateNotApprovedError,
)
from ..transport import MessageTransport, get_transport
from . import schemas
from .dispatcher import CampaignDispatcher
from .models import DispatchSummary
from .reconciler import DeliveryReconciler
from .repository import CampaignRepository, PostgresCampaignRepository
from .runner import DispatchRunner, get_runner

logger = logging.getLogger(__name__)

APPROVED_TEMPLATE_STATUS = "approved"
STARTABLE_STATUSES = (schemas.CampaignStatus.DRAFT, schemas.CampaignStatus.SCHEDULED)

JobRepositories = Callable[
    [], AbstractContextManager[tuple[CampaignRepository, ConversationRepository]]
]


@contextmanager
def postgres_job_repositories() -> Iterator[tuple[CampaignRepository, ConversationRepository]]:
    """Repositories on a dedicated autocommit connection for a background job."""

    conn = db.connect(autocommit=True)
    try:
        yield PostgresCampaignRepository(conn), PostgresConversationRepository(conn)
    finally:
        conn.close()


class CampaignService:
    def __init__(
        self,
        campaigns: CampaignRepository,
        conversations: ConversationRepository,
        *,
        runner: DispatchRunner | None = None,
        job_repositories: JobRepositories = postgres_job_repositories,
        transport_factory: Callable[[], MessageTransport] = get_transport,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._campaigns = campaigns
        self._conversations = conversations
        self._runner = runner
        self._job_repositories = job_repositories
        self._transport_factory = transport_factory
        self._settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

    @property
    def runner(self) -> DispatchRunner:
        if self._runner is None:
            self._runner = get_runner()
        return self._runner

    # Creation ------------------------------------------------------------------
    def create_campaign(
        self, request: schemas.CampaignCreateRequest, *, created_by: str | None = None
    ) -> schemas.Campaign:
        template = self._campaigns.get_template(request.template_id)
        if template is None:
            raise NotFoundError(f"Template {request.template_id} not found")
        if template.status != APPROVED_TEMPLATE_STATUS:
            raise TemplateNotApprovedError(
                f"Template {template.name} is {template.status}; only approved templates can be used"
            )
        if self._campaigns.get_contact_group(request.audience_id) is None:
            raise NotFoundError(f"Contact group {request.audience_id} not found")

        status = (
            schemas.CampaignStatus.SCHEDULED
            if request.schedule_type == schemas.ScheduleType.SCHEDULED
            else schemas.CampaignStatus.DRAFT
        )
        campaign = self._campaigns.create_campaign(
            name=request.name,
            template_id=template.id,
            target_segments=[request.audience_id],
            schedule_type=request.schedule_type,
            scheduled_at=request.scheduled_at,
            template_variables=request.template_variables,
            variable_source=request.variable_source,
            status=status,
            created_by=created_by,
            now=self._clock(),
        )
        logger.info("Campaign %s created (%s)", campaign.id, status.value)
        return campaign

    # Dispatch ------------------------------------------------------------------
    def start_dispatch(
        self,
        campaign_id: UUID,
        *,
        batch_size: int | None = None,
        delay_ms: int | None = None,
    ) -> tuple[schemas.Campaign, schemas.DispatchJob]:
        """Claim the campaign for sending and record a queued dispatch job.

        The job is not submitted here; call :meth:`launch` once the claim has
        been committed so the worker sees the ``running`` campaign.
        """

        campaign = self._campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        claimed = self._campaigns.transition_campaign(
            campaign_id,
            schemas.CampaignStatus.RUNNING,
            now=self._clock(),
            expected=STARTABLE_STATUSES,
        )
        if not claimed:
            raise StateConflictError(
                f"Campaign {campaign_id} is {campaign.status.value} and cannot be sent",
                code="CAMPAIGN_NOT_STARTABLE",
            )
        job = self._campaigns.create_dispatch_job(
            campaign_id,
            batch_size=batch_size or self._settings.campaign_batch_size,
            delay_ms=delay_ms if delay_ms is not None else self._settings.campaign_batch_delay_ms,
            now=self._clock(),
        )
        logger.info("Dispatch job %s queued for campaign %s", job.id, campaign_id)
        return self._campaigns.get_campaign(campaign_id) or campaign, job

    def launch(self, job: schemas.DispatchJob):
        """Submit a queued dispatch job to the background runner."""

        return self.runner.submit(job.id, lambda: self.run_job(job))

    def run_job(self, job: schemas.DispatchJob) -> None:
        """Execute one dispatch job, recording progress on its job row."""

        job_logger, log_path = setup_job_logging(job.id)
        try:
            with self._job_repositories() as (campaigns, conversations):
                campaigns.update_dispatch_job(
                    job.id,
                    status=schemas.JobStatus.RUNNING,
                    started_at=self._clock(),
                    log_path=str(log_path),
                )

                def progress(summary: DispatchSummary) -> None:
                    campaigns.update_dispatch_job(
                        job.id,
                        total_recipients=summary.total_recipients,
                        sent_count=summary.sent,
                        failed_count=summary.failed,
                    )

                try:
                    transport = self._transport_factory()
                except Exception as exc:
                    # Nothing was sent, so the campaign fails with the job.
                    self._fail_job(campaigns, job, exc, job_logger, fail_campaign=True)
                    return

                try:
                    dispatcher = CampaignDispatcher(
                        campaigns,
                        conversations,
                        transport,
                        status_callback=self._settings.status_callback_url,
                        clock=self._clock,
                        sleep=self._sleep,
                        logger=job_logger,
                    )
                    summary = dispatcher.dispatch(
                        job.campaign_id,
                        batch_size=job.batch_size,
                        delay_ms=job.delay_ms,
                        on_progress=progress,
                    )
                except Exception as exc:
                    # The dispatcher fails the campaign itself, and only when
                    # nothing was sent.
                    self._fail_job(campaigns, job, exc, job_logger)
                    return

                progress(summary)
                campaigns.update_dispatch_job(
                    job.id,
                    status=schemas.JobStatus.SUCCEEDED,
                    finished_at=self._clock(),
                )
                job_logger.info(
                    "Dispatch job %s finished: %d sent, %d failed",
                    job.id,
                    summary.sent,
                    summary.failed,
                )
        except Exception:
            logger.exception("Dispatch job %s could not run", job.id)
        finally:
            close_job_logging(job_logger)

    def _fail_job(
        self,
        campaigns: CampaignRepository,
        job: schemas.DispatchJob,
        exc: Exception,
        job_logger: logging.Logger,
        *,
        fail_campaign: bool = False,
    ) -> None:
        job_logger.error("Dispatch job %s failed: %s", job.id, exc, exc_info=exc)
        if fail_campaign:
            campaigns.transition_campaign(
                job.campaign_id,
                schemas.CampaignStatus.FAILED,
                now=self._clock(),
                expected=[schemas.CampaignStatus.RUNNING],
            )
        campaigns.update_dispatch_job(
            job.id,
            status=schemas.JobStatus.FAILED,
            error=str(exc),
            finished_at=self._clock(),
        )

    def get_job(self, campaign_id: UUID, job_id: UUID) -> schemas.DispatchJob:
        job = self._campaigns.get_dispatch_job(job_id)
        if job is None or job.campaign_id != campaign_id:
            raise NotFoundError(f"Dispatch job {job_id} not found")
        return job

    # Reporting -----------------------------------------------------------------
    def _require_campaign(self, campaign_id: UUID) -> schemas.Campaign:
        campaign = self._campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    def get_campaign(self, campaign_id: UUID) -> schemas.Campaign:
        return self._require_campaign(campaign_id)

    def get_analytics(self, campaign_id: UUID) -> schemas.CampaignAnalytics:
        self._require_campaign(campaign_id)
        analytics = self._campaigns.get_analytics(campaign_id)
        if analytics is None:
            analytics = DeliveryReconciler(self._campaigns, clock=self._clock).refresh(
                campaign_id
            )
        return analytics

    def activation_stats(self, campaign_id: UUID) -> schemas.ActivationStats:
        self._require_campaign(campaign_id)
        stats = self._conversations.campaign_conversation_stats(campaign_id)
        rate = round(stats.activated / stats.total * 100, 2) if stats.total else 0.0
        return schemas.ActivationStats(
            campaign_id=campaign_id,
            total_conversations=stats.total,
            activated_conversations=stats.activated,
            dormant_conversations=stats.dormant,
            activation_rate=rate,
        )
