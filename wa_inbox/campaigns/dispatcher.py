"""Campaign dispatch: resolve the audience and send templates in paced batches."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from uuid import UUID

from ..conversations import schemas as convo_schemas
from ..conversations.repository import ConversationRepository
from ..conversations.window import utcnow
from ..core.errors import (
    NotFoundError,
    StateConflictError,
    TransportError,
    ValidationError,
)
from ..transport import MessageTransport, OutboundMessage
from .models import DispatchSummary, Recipient, SendOutcome
from .personalize import personalize
from .reconciler import DeliveryReconciler
from .repository import CampaignRepository
from .schemas import Campaign, CampaignMessageStatus, CampaignStatus, Template

DEFAULT_BATCH_SIZE = 50
DEFAULT_DELAY_MS = 1000

ProgressCallback = Callable[[DispatchSummary], None]


def dedupe_contacts(
    contacts: Sequence[convo_schemas.Contact],
) -> list[convo_schemas.Contact]:
    """Keep the first occurrence of each contact id, preserving order."""

    seen: set[UUID] = set()
    unique = []
    for contact in contacts:
        if contact.id in seen:
            continue
        seen.add(contact.id)
        unique.append(contact)
    return unique


def chunked(items: Sequence, size: int) -> list[Sequence]:
    if size < 1:
        raise ValueError("batch size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


class CampaignDispatcher:
    """Send a running campaign to every unique contact in its segments.

    Batches run one after another with ``delay_ms`` between them; sends
    inside a batch run concurrently. Each recipient gets a ``pending``
    tracking row before its send is attempted, and a failed send only
    affects that row.
    """

    def __init__(
        self,
        campaigns: CampaignRepository,
        conversations: ConversationRepository,
        transport: MessageTransport,
        *,
        status_callback: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._campaigns = campaigns
        self._conversations = conversations
        self._transport = transport
        self._status_callback = status_callback
        self._clock = clock
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self.reconciler = DeliveryReconciler(campaigns, clock=clock)

    # Audience ----------------------------------------------------------------
    def resolve_audience(self, campaign: Campaign) -> list[convo_schemas.Contact]:
        contacts = self._campaigns.list_segment_contacts(campaign.target_segments)
        return dedupe_contacts(contacts)

    def _prepare(self, campaign: Campaign) -> tuple[Template, list[convo_schemas.Contact]]:
        template = self._campaigns.get_template(campaign.template_id)
        if template is None:
            raise NotFoundError(f"Template {campaign.template_id} not found")
        if not template.content_sid:
            raise ValidationError(f"Template {template.id} has no provider content id")
        audience = self.resolve_audience(campaign)
        if not audience:
            raise ValidationError(f"Campaign {campaign.id} has no recipients")
        return template, audience

    def _fail_campaign(self, campaign_id: UUID, exc: Exception) -> None:
        self.logger.error("Campaign %s failed before sending: %s", campaign_id, exc)
        self._campaigns.transition_campaign(
            campaign_id,
            CampaignStatus.FAILED,
            now=self._clock(),
            expected=[CampaignStatus.RUNNING],
        )

    # Per-recipient -------------------------------------------------------------
    def _ensure_conversation(self, campaign: Campaign, contact: convo_schemas.Contact) -> None:
        existing = self._conversations.latest_conversation_for_contact(contact.id)
        if existing is not None:
            return
        self._conversations.create_conversation(
            contact.id,
            now=self._clock(),
            status=convo_schemas.ConversationStatus.OPEN,
            visibility=convo_schemas.Visibility.DORMANT,
            created_by_campaign=campaign.id,
        )

    def _send_one(self, message: OutboundMessage) -> tuple[str | None, str | None, str | None]:
        try:
            result = self._transport.send(message)
        except TransportError as exc:
            return None, exc.provider_code or exc.code, exc.message
        except Exception as exc:  # isolate unexpected transport bugs per recipient
            self.logger.exception("Unexpected transport failure for %s", message.to)
            return None, "TRANSPORT_ERROR", str(exc)
        return result.id, None, None

    def _record(self, outcome: SendOutcome) -> None:
        now = self._clock()
        try:
            if outcome.ok:
                self._campaigns.mark_message_sent(
                    outcome.campaign_message_id, outcome.message_sid, now=now
                )
                return
            self.logger.warning(
                "Send to %s failed: %s %s",
                outcome.recipient.phone_number,
                outcome.error_code,
                outcome.error_message,
            )
            self._campaigns.mark_message_failed(
                outcome.campaign_message_id,
                error_code=outcome.error_code,
                error_message=outcome.error_message,
                now=now,
            )
        except Exception:
            self.logger.exception(
                "Could not record outcome for %s (message %s)",
                outcome.recipient.phone_number,
                outcome.campaign_message_id,
            )

    def _deliver(self, outcome: SendOutcome, message: OutboundMessage | None) -> SendOutcome:
        """Send one recipient's message and store the result straight away."""

        if message is not None:
            sid, code, text = self._send_one(message)
            outcome.message_sid = sid
            outcome.error_code = code
            outcome.error_message = text
        self._record(outcome)
        return outcome

    def _prepare_recipient(
        self,
        campaign: Campaign,
        template: Template,
        contact: convo_schemas.Contact,
    ) -> tuple[SendOutcome, OutboundMessage | None] | None:
        recipient = Recipient(contact_id=contact.id, phone_number=contact.phone_number)
        try:
            row, created = self._campaigns.get_or_create_campaign_message(
                campaign.id, contact.id, contact.phone_number, now=self._clock()
            )
        except Exception as exc:
            self.logger.error("Could not track recipient %s: %s", contact.id, exc)
            return None
        if not created and row.status != CampaignMessageStatus.PENDING:
            self.logger.info("Recipient %s already handled; skipping", contact.id)
            return None

        outcome = SendOutcome(recipient=recipient, campaign_message_id=row.id)
        try:
            self._ensure_conversation(campaign, contact)
        except Exception as exc:
            outcome.error_code = "CONVERSATION_FAILED"
            outcome.error_message = f"Could not open conversation: {exc}"
            return outcome, None
        try:
            variables = personalize(campaign, template, contact)
        except Exception as exc:
            outcome.error_code = "PERSONALIZATION_FAILED"
            outcome.error_message = str(exc)
            return outcome, None
        return outcome, OutboundMessage(
            to=contact.phone_number,
            content_sid=template.content_sid,
            content_variables=variables,
            status_callback=self._status_callback,
        )

    def _run_batch(
        self,
        campaign: Campaign,
        template: Template,
        batch: Sequence[convo_schemas.Contact],
    ) -> list[SendOutcome]:
        prepared = []
        for contact in batch:
            item = self._prepare_recipient(campaign, template, contact)
            if item is not None:
                prepared.append(item)
        if not prepared:
            return []
        with ThreadPoolExecutor(max_workers=len(prepared)) as executor:
            return list(executor.map(lambda pair: self._deliver(*pair), prepared))

    # Entry point ---------------------------------------------------------------
    def dispatch(
        self,
        campaign_id: UUID,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        delay_ms: int = DEFAULT_DELAY_MS,
        on_progress: ProgressCallback | None = None,
    ) -> DispatchSummary:
        """Dispatch a campaign already moved to ``running``.

        Marks the campaign ``failed`` and re-raises only when the run stops
        before any send is attempted (missing template or empty audience).
        Per-recipient failures are recorded on their rows and never abort
        the batch or the campaign.
        """

        campaign = self._campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status != CampaignStatus.RUNNING:
            raise StateConflictError(
                f"Campaign {campaign_id} is {campaign.status.value}, expected running"
            )
        try:
            template, audience = self._prepare(campaign)
        except Exception as exc:
            self._fail_campaign(campaign_id, exc)
            raise

        summary = DispatchSummary(campaign_id=campaign_id, total_recipients=len(audience))
        self.logger.info(
            "Dispatching campaign %s to %d recipient(s) in batches of %d",
            campaign_id,
            len(audience),
            batch_size,
        )
        if on_progress:
            on_progress(summary)

        batches = chunked(audience, batch_size)
        for index, batch in enumerate(batches):
            if index > 0 and delay_ms > 0:
                self._sleep(delay_ms / 1000)
            current = self._campaigns.get_campaign(campaign_id)
            if current is None or current.status != CampaignStatus.RUNNING:
                self.logger.info("Campaign %s no longer running; stopping dispatch", campaign_id)
                summary.stopped_early = True
                break

            outcomes = self._run_batch(current, template, batch)
            summary.batches += 1
            summary.sent += sum(1 for o in outcomes if o.ok)
            summary.failed += sum(1 for o in outcomes if not o.ok)
            self.logger.info(
                "Campaign %s batch %d/%d: %d sent, %d failed",
                campaign_id,
                index + 1,
                len(batches),
                sum(1 for o in outcomes if o.ok),
                sum(1 for o in outcomes if not o.ok),
            )
            if on_progress:
                on_progress(summary)

        self.reconciler.refresh(campaign_id)
        return summary
