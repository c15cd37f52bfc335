"""Delivery-status reconciliation and campaign analytics.

Provider callbacks arrive out of order and may repeat. Status only moves
forward along ``pending < sent < delivered < read``; ``failed`` is terminal.
Analytics are a pure aggregation over the campaign's message rows, so they
can be recomputed at any time with the same result.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from uuid import UUID

from ..conversations.window import utcnow
from .models import StatusCallback
from .repository import CampaignRepository
from .schemas import CampaignAnalytics, CampaignMessageStatus, CampaignStatus

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP: dict[str, CampaignMessageStatus] = {
    "queued": CampaignMessageStatus.PENDING,
    "accepted": CampaignMessageStatus.PENDING,
    "sending": CampaignMessageStatus.PENDING,
    "sent": CampaignMessageStatus.SENT,
    "delivered": CampaignMessageStatus.DELIVERED,
    "read": CampaignMessageStatus.READ,
    "failed": CampaignMessageStatus.FAILED,
    "undelivered": CampaignMessageStatus.FAILED,
}

_RANK = {
    CampaignMessageStatus.PENDING: 0,
    CampaignMessageStatus.SENT: 1,
    CampaignMessageStatus.DELIVERED: 2,
    CampaignMessageStatus.READ: 3,
}


def map_provider_status(status: str) -> CampaignMessageStatus | None:
    return PROVIDER_STATUS_MAP.get((status or "").strip().lower())


def allowed_predecessors(target: CampaignMessageStatus) -> set[CampaignMessageStatus]:
    """Statuses from which ``target`` may be reached.

    A failure can only replace a message that was never confirmed delivered.
    """

    if target == CampaignMessageStatus.FAILED:
        return {CampaignMessageStatus.PENDING, CampaignMessageStatus.SENT}
    rank = _RANK[target]
    return {status for status, value in _RANK.items() if value < rank}


def can_transition(current: CampaignMessageStatus, target: CampaignMessageStatus) -> bool:
    return current in allowed_predecessors(target)


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator * 100, 2)


def compute_analytics(
    campaign_id: UUID, counts: Mapping[str, int], updated_at: datetime | None = None
) -> CampaignAnalytics:
    """Aggregate per-status counts into the analytics projection.

    ``total_sent`` counts every message that left ``pending``; delivered
    includes read messages since a read message was delivered first.
    Rates are percentages rounded to two decimals.
    """

    pending = counts.get(CampaignMessageStatus.PENDING.value, 0)
    sent_only = counts.get(CampaignMessageStatus.SENT.value, 0)
    delivered_only = counts.get(CampaignMessageStatus.DELIVERED.value, 0)
    read = counts.get(CampaignMessageStatus.READ.value, 0)
    failed = counts.get(CampaignMessageStatus.FAILED.value, 0)

    delivered = delivered_only + read
    total_sent = sent_only + delivered + failed
    return CampaignAnalytics(
        campaign_id=campaign_id,
        total_sent=total_sent,
        total_pending=pending,
        total_delivered=delivered,
        total_read=read,
        total_failed=failed,
        delivery_rate=_rate(delivered, total_sent),
        read_rate=_rate(read, delivered),
        updated_at=updated_at,
    )


def is_settled(counts: Mapping[str, int]) -> bool:
    """True when no message awaits a send attempt or a delivery report."""

    return (
        counts.get(CampaignMessageStatus.PENDING.value, 0) == 0
        and counts.get(CampaignMessageStatus.SENT.value, 0) == 0
    )


class DeliveryReconciler:
    def __init__(
        self,
        repository: CampaignRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._clock = clock

    def apply(self, callback: StatusCallback) -> bool:
        """Apply one provider status report. Returns whether it changed anything."""

        target = map_provider_status(callback.status)
        if target is None:
            logger.warning(
                "Ignoring unknown status %r for %s", callback.status, callback.message_sid
            )
            return False
        message = self._repo.get_campaign_message_by_sid(callback.message_sid)
        if message is None:
            logger.debug("No campaign message for %s", callback.message_sid)
            return False
        if not can_transition(message.status, target):
            logger.info(
                "Ignoring %s for %s: already %s",
                target.value,
                callback.message_sid,
                message.status.value,
            )
            return False

        now = self._clock()
        delivered_at = None
        read_at = None
        if target == CampaignMessageStatus.DELIVERED:
            delivered_at = now
        elif target == CampaignMessageStatus.READ:
            read_at = now
            delivered_at = now
        error_code = callback.error_code if target == CampaignMessageStatus.FAILED else None
        error_message = (
            callback.error_message if target == CampaignMessageStatus.FAILED else None
        )
        if target == CampaignMessageStatus.FAILED:
            logger.warning(
                "Message %s %s: %s %s",
                callback.message_sid,
                callback.status,
                callback.error_code or "",
                callback.error_message or "",
            )

        accepted = self._repo.update_message_status(
            message.id,
            target,
            allowed_from=allowed_predecessors(target),
            now=now,
            delivered_at=delivered_at,
            read_at=read_at,
            error_code=error_code,
            error_message=error_message,
        )
        if accepted:
            self.refresh(message.campaign_id)
        return accepted

    def refresh(self, campaign_id: UUID) -> CampaignAnalytics:
        """Recompute analytics and complete the campaign once it has settled."""

        counts = self._repo.message_status_counts(campaign_id)
        analytics = compute_analytics(campaign_id, counts, updated_at=self._clock())
        self._repo.save_analytics(analytics)
        if counts and is_settled(counts):
            completed = self._repo.transition_campaign(
                campaign_id,
                CampaignStatus.COMPLETED,
                now=self._clock(),
                expected=[CampaignStatus.RUNNING],
            )
            if completed:
                logger.info("Campaign %s completed", campaign_id)
        return analytics
