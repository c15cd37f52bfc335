"""Domain models for campaign dispatch and delivery reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID


@dataclass
class StatusCallback:
    """Delivery-status report for one provider message."""

    message_sid: str
    status: str
    error_code: str | None = None
    error_message: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Recipient:
    """A resolved audience member for one campaign."""

    contact_id: UUID
    phone_number: str


@dataclass
class SendOutcome:
    recipient: Recipient
    campaign_message_id: UUID
    message_sid: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.message_sid is not None


@dataclass
class DispatchSummary:
    campaign_id: UUID
    total_recipients: int = 0
    sent: int = 0
    failed: int = 0
    batches: int = 0
    stopped_early: bool = False
