"""Pydantic schemas for campaigns, campaign messages and dispatch jobs."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ScheduleType(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class VariableSource(str, Enum):
    MANUAL = "manual"
    CONTACT = "contact"


class CampaignMessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Lifecycle states for a dispatch job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Template(BaseModel):
    id: UUID
    name: str
    content_sid: str | None = None
    body: str = ""
    status: str = "pending"
    variables: dict[str, Any] = Field(default_factory=dict)


class ContactGroup(BaseModel):
    id: UUID
    name: str
    description: str | None = None


class Campaign(BaseModel):
    id: UUID
    name: str
    template_id: UUID
    target_segments: list[UUID] = Field(default_factory=list)
    schedule_type: ScheduleType = ScheduleType.IMMEDIATE
    scheduled_at: datetime | None = None
    template_variables: dict[str, Any] = Field(default_factory=dict)
    variable_source: VariableSource = VariableSource.MANUAL
    status: CampaignStatus = CampaignStatus.DRAFT
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class CampaignMessage(BaseModel):
    id: UUID
    campaign_id: UUID
    contact_id: UUID
    phone_number: str
    status: CampaignMessageStatus = CampaignMessageStatus.PENDING
    message_sid: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class CampaignAnalytics(BaseModel):
    campaign_id: UUID
    total_sent: int = 0
    total_pending: int = 0
    total_delivered: int = 0
    total_read: int = 0
    total_failed: int = 0
    delivery_rate: float = 0.0
    read_rate: float = 0.0
    updated_at: datetime | None = None


class DispatchJob(BaseModel):
    id: UUID
    campaign_id: UUID
    status: JobStatus = JobStatus.QUEUED
    batch_size: int
    delay_ms: int
    total_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0
    error: str | None = None
    log_path: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CampaignCreateRequest(_CamelModel):
    name: str = Field(min_length=1, max_length=255)
    template_id: UUID
    audience_id: UUID
    schedule_type: ScheduleType = ScheduleType.IMMEDIATE
    scheduled_at: datetime | None = None
    template_variables: dict[str, Any] = Field(default_factory=dict)
    variable_source: VariableSource = VariableSource.MANUAL

    @model_validator(mode="after")
    def _require_schedule_time(self) -> "CampaignCreateRequest":
        if self.schedule_type == ScheduleType.SCHEDULED and self.scheduled_at is None:
            raise ValueError("scheduledAt is required for scheduled campaigns")
        return self


class CampaignSendRequest(_CamelModel):
    batch_size: int = Field(50, ge=1, le=100)
    delay_ms: int = Field(1000, ge=100, le=5000)


class CampaignCreateResponse(BaseModel):
    success: bool = True
    campaign: Campaign
    dispatch_job: DispatchJob | None = None


class ActivationStats(BaseModel):
    campaign_id: UUID
    total_conversations: int
    activated_conversations: int
    dormant_conversations: int
    activation_rate: float
