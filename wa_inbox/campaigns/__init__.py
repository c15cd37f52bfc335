"""Template campaigns: audiences, dispatch and delivery tracking."""

from .models import DispatchSummary, Recipient, SendOutcome, StatusCallback
from .schemas import (
    Campaign,
    CampaignAnalytics,
    CampaignMessage,
    CampaignMessageStatus,
    CampaignStatus,
    DispatchJob,
    JobStatus,
    Template,
)

__all__ = [
    "Campaign",
    "CampaignAnalytics",
    "CampaignMessage",
    "CampaignMessageStatus",
    "CampaignStatus",
    "DispatchJob",
    "DispatchSummary",
    "JobStatus",
    "Recipient",
    "SendOutcome",
    "StatusCallback",
    "Template",
]
