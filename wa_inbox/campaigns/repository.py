"""Persistence for templates, audiences, campaigns and dispatch jobs."""
from __future__ import annotations

import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple
from uuid import UUID

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..conversations.schemas import Contact
from ..core.errors import PersistenceError
from . import schemas

_JOB_FIELDS = {
    "status",
    "total_recipients",
    "sent_count",
    "failed_count",
    "error",
    "log_path",
    "started_at",
    "finished_at",
}


class CampaignRepository(Protocol):
    """Abstraction over campaign tables."""

    def get_template(self, template_id: UUID) -> Optional[schemas.Template]: ...

    def get_contact_group(self, group_id: UUID) -> Optional[schemas.ContactGroup]: ...

    def list_segment_contacts(self, segment_ids: Sequence[UUID]) -> List[Contact]: ...

    def create_campaign(
        self,
        *,
        name: str,
        template_id: UUID,
        target_segments: Sequence[UUID],
        schedule_type: schemas.ScheduleType,
        scheduled_at: Optional[datetime],
        template_variables: Dict[str, Any],
        variable_source: schemas.VariableSource,
        status: schemas.CampaignStatus,
        created_by: Optional[str],
        now: datetime,
    ) -> schemas.Campaign: ...

    def get_campaign(self, campaign_id: UUID) -> Optional[schemas.Campaign]: ...

    def transition_campaign(
        self,
        campaign_id: UUID,
        status: schemas.CampaignStatus,
        *,
        now: datetime,
        expected: Optional[Iterable[schemas.CampaignStatus]] = None,
    ) -> bool: ...

    def get_or_create_campaign_message(
        self, campaign_id: UUID, contact_id: UUID, phone_number: str, *, now: datetime
    ) -> Tuple[schemas.CampaignMessage, bool]: ...

    def mark_message_sent(self, message_id: UUID, message_sid: str, *, now: datetime) -> None: ...

    def mark_message_failed(
        self,
        message_id: UUID,
        *,
        error_code: Optional[str],
        error_message: Optional[str],
        now: datetime,
    ) -> None: ...

    def get_campaign_message_by_sid(
        self, message_sid: str
    ) -> Optional[schemas.CampaignMessage]: ...

    def update_message_status(
        self,
        message_id: UUID,
        status: schemas.CampaignMessageStatus,
        *,
        allowed_from: Iterable[schemas.CampaignMessageStatus],
        now: datetime,
        delivered_at: Optional[datetime] = None,
        read_at: Optional[datetime] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool: ...

    def list_campaign_messages(self, campaign_id: UUID) -> List[schemas.CampaignMessage]: ...

    def message_status_counts(self, campaign_id: UUID) -> Dict[str, int]: ...

    def save_analytics(self, analytics: schemas.CampaignAnalytics) -> None: ...

    def get_analytics(self, campaign_id: UUID) -> Optional[schemas.CampaignAnalytics]: ...

    def create_dispatch_job(
        self, campaign_id: UUID, *, batch_size: int, delay_ms: int, now: datetime
    ) -> schemas.DispatchJob: ...

    def update_dispatch_job(self, job_id: UUID, **fields: Any) -> None: ...

    def get_dispatch_job(self, job_id: UUID) -> Optional[schemas.DispatchJob]: ...

    def list_dispatch_jobs(self, campaign_id: UUID) -> List[schemas.DispatchJob]: ...


class PostgresCampaignRepository:
    """PostgreSQL implementation of :class:`CampaignRepository`."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    # Utility -----------------------------------------------------------------
    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def _execute(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        try:
            with self._cursor() as cur:
                cur.execute(query, params)
                if cur.description is None:
                    return []
                return cur.fetchall()
        except psycopg.Error as exc:
            raise PersistenceError("Database query failed", details=str(exc)) from exc

    def _one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        rows = self._execute(query, params)
        return rows[0] if rows else None

    # Templates and audiences ---------------------------------------------------
    def get_template(self, template_id: UUID) -> Optional[schemas.Template]:
        row = self._one("SELECT * FROM templates WHERE id = %s", (template_id,))
        return schemas.Template(**row) if row else None

    def get_contact_group(self, group_id: UUID) -> Optional[schemas.ContactGroup]:
        row = self._one("SELECT * FROM contact_groups WHERE id = %s", (group_id,))
        return schemas.ContactGroup(**row) if row else None

    def list_segment_contacts(self, segment_ids: Sequence[UUID]) -> List[Contact]:
        if not segment_ids:
            return []
        rows = self._execute(
            """
            SELECT DISTINCT ON (c.id) c.*
            FROM contacts c
            JOIN contact_group_members m ON m.contact_id = c.id
            WHERE m.group_id = ANY(%s)
            ORDER BY c.id
            """,
            (list(segment_ids),),
        )
        return [Contact(**row) for row in rows]

    # Campaigns -----------------------------------------------------------------
    def create_campaign(
        self,
        *,
        name: str,
        template_id: UUID,
        target_segments: Sequence[UUID],
        schedule_type: schemas.ScheduleType,
        scheduled_at: Optional[datetime],
        template_variables: Dict[str, Any],
        variable_source: schemas.VariableSource,
        status: schemas.CampaignStatus,
        created_by: Optional[str],
        now: datetime,
    ) -> schemas.Campaign:
        row = self._one(
            """
            INSERT INTO campaigns
                (name, template_id, target_segments, schedule_type, scheduled_at,
                 template_variables, variable_source, status, created_by, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                name,
                template_id,
                list(target_segments),
                schedule_type.value,
                scheduled_at,
                Jsonb(template_variables or {}),
                variable_source.value,
                status.value,
                created_by,
                now,
                now,
            ),
        )
        return schemas.Campaign(**row)

    def get_campaign(self, campaign_id: UUID) -> Optional[schemas.Campaign]:
        row = self._one("SELECT * FROM campaigns WHERE id = %s", (campaign_id,))
        return schemas.Campaign(**row) if row else None

    def transition_campaign(
        self,
        campaign_id: UUID,
        status: schemas.CampaignStatus,
        *,
        now: datetime,
        expected: Optional[Iterable[schemas.CampaignStatus]] = None,
    ) -> bool:
        if expected is None:
            row = self._one(
                "UPDATE campaigns SET status = %s, updated_at = %s WHERE id = %s RETURNING id",
                (status.value, now, campaign_id),
            )
        else:
            row = self._one(
                """
                UPDATE campaigns SET status = %s, updated_at = %s
                WHERE id = %s AND status = ANY(%s)
                RETURNING id
                """,
                (status.value, now, campaign_id, [s.value for s in expected]),
            )
        return row is not None

    # Campaign messages -----------------------------------------------------------
    def get_or_create_campaign_message(
        self, campaign_id: UUID, contact_id: UUID, phone_number: str, *, now: datetime
    ) -> Tuple[schemas.CampaignMessage, bool]:
        row = self._one(
            """
            INSERT INTO campaign_messages
                (campaign_id, contact_id, phone_number, status, created_at, updated_at)
            VALUES (%s, %s, %s, 'pending', %s, %s)
            ON CONFLICT (campaign_id, contact_id) DO NOTHING
            RETURNING *
            """,
            (campaign_id, contact_id, phone_number, now, now),
        )
        if row is not None:
            return schemas.CampaignMessage(**row), True
        row = self._one(
            "SELECT * FROM campaign_messages WHERE campaign_id = %s AND contact_id = %s",
            (campaign_id, contact_id),
        )
        if row is None:
            raise PersistenceError("Campaign message vanished after conflict")
        return schemas.CampaignMessage(**row), False

    def mark_message_sent(self, message_id: UUID, message_sid: str, *, now: datetime) -> None:
        self._execute(
            """
            UPDATE campaign_messages
            SET status = 'sent', message_sid = %s, sent_at = %s, updated_at = %s
            WHERE id = %s AND status = 'pending'
            """,
            (message_sid, now, now, message_id),
        )

    def mark_message_failed(
        self,
        message_id: UUID,
        *,
        error_code: Optional[str],
        error_message: Optional[str],
        now: datetime,
    ) -> None:
        self._execute(
            """
            UPDATE campaign_messages
            SET status = 'failed', error_code = %s, error_message = %s, updated_at = %s
            WHERE id = %s AND status = 'pending'
            """,
            (error_code, error_message, now, message_id),
        )

    def get_campaign_message_by_sid(
        self, message_sid: str
    ) -> Optional[schemas.CampaignMessage]:
        row = self._one(
            "SELECT * FROM campaign_messages WHERE message_sid = %s", (message_sid,)
        )
        return schemas.CampaignMessage(**row) if row else None

    def update_message_status(
        self,
        message_id: UUID,
        status: schemas.CampaignMessageStatus,
        *,
        allowed_from: Iterable[schemas.CampaignMessageStatus],
        now: datetime,
        delivered_at: Optional[datetime] = None,
        read_at: Optional[datetime] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        # The status guard in WHERE keeps concurrent callbacks monotonic.
        row = self._one(
            """
            UPDATE campaign_messages
            SET status = %s,
                delivered_at = COALESCE(delivered_at, %s),
                read_at = COALESCE(read_at, %s),
                error_code = COALESCE(%s, error_code),
                error_message = COALESCE(%s, error_message),
                updated_at = %s
            WHERE id = %s AND status = ANY(%s)
            RETURNING id
            """,
            (
                status.value,
                delivered_at,
                read_at,
                error_code,
                error_message,
                now,
                message_id,
                [s.value for s in allowed_from],
            ),
        )
        return row is not None

    def list_campaign_messages(self, campaign_id: UUID) -> List[schemas.CampaignMessage]:
        rows = self._execute(
            "SELECT * FROM campaign_messages WHERE campaign_id = %s ORDER BY created_at",
            (campaign_id,),
        )
        return [schemas.CampaignMessage(**row) for row in rows]

    def message_status_counts(self, campaign_id: UUID) -> Dict[str, int]:
        rows = self._execute(
            """
            SELECT status, count(*) AS total
            FROM campaign_messages
            WHERE campaign_id = %s
            GROUP BY status
            """,
            (campaign_id,),
        )
        return {row["status"]: int(row["total"]) for row in rows}

    # Analytics -------------------------------------------------------------------
    def save_analytics(self, analytics: schemas.CampaignAnalytics) -> None:
        self._execute(
            """
            INSERT INTO campaign_analytics
                (campaign_id, total_sent, total_pending, total_delivered, total_read,
                 total_failed, delivery_rate, read_rate, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (campaign_id) DO UPDATE SET
                total_sent = EXCLUDED.total_sent,
                total_pending = EXCLUDED.total_pending,
                total_delivered = EXCLUDED.total_delivered,
                total_read = EXCLUDED.total_read,
                total_failed = EXCLUDED.total_failed,
                delivery_rate = EXCLUDED.delivery_rate,
                read_rate = EXCLUDED.read_rate,
                updated_at = EXCLUDED.updated_at
            """,
            (
                analytics.campaign_id,
                analytics.total_sent,
                analytics.total_pending,
                analytics.total_delivered,
                analytics.total_read,
                analytics.total_failed,
                analytics.delivery_rate,
                analytics.read_rate,
                analytics.updated_at,
            ),
        )

    def get_analytics(self, campaign_id: UUID) -> Optional[schemas.CampaignAnalytics]:
        row = self._one(
            "SELECT * FROM campaign_analytics WHERE campaign_id = %s", (campaign_id,)
        )
        return schemas.CampaignAnalytics(**row) if row else None

    # Dispatch jobs ---------------------------------------------------------------
    def create_dispatch_job(
        self, campaign_id: UUID, *, batch_size: int, delay_ms: int, now: datetime
    ) -> schemas.DispatchJob:
        row = self._one(
            """
            INSERT INTO dispatch_jobs (campaign_id, status, batch_size, delay_ms, created_at, updated_at)
            VALUES (%s, 'queued', %s, %s, %s, %s)
            RETURNING *
            """,
            (campaign_id, batch_size, delay_ms, now, now),
        )
        return schemas.DispatchJob(**row)

    def update_dispatch_job(self, job_id: UUID, **fields: Any) -> None:
        unknown = set(fields) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown dispatch job fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = []
        params: List[Any] = []
        for key, value in fields.items():
            assignments.append(f"{key} = %s")
            params.append(value.value if isinstance(value, schemas.JobStatus) else value)
        assignments.append("updated_at = timezone('utc', now())")
        params.append(job_id)
        self._execute(
            f"UPDATE dispatch_jobs SET {', '.join(assignments)} WHERE id = %s",
            tuple(params),
        )

    def get_dispatch_job(self, job_id: UUID) -> Optional[schemas.DispatchJob]:
        row = self._one("SELECT * FROM dispatch_jobs WHERE id = %s", (job_id,))
        return schemas.DispatchJob(**row) if row else None

    def list_dispatch_jobs(self, campaign_id: UUID) -> List[schemas.DispatchJob]:
        rows = self._execute(
            "SELECT * FROM dispatch_jobs WHERE campaign_id = %s ORDER BY created_at DESC",
            (campaign_id,),
        )
        return [schemas.DispatchJob(**row) for row in rows]


class InMemoryCampaignRepository:
    """Dictionary-backed repository used by tests and local tooling."""

    def __init__(self) -> None:
        self.templates: Dict[UUID, schemas.Template] = {}
        self.groups: Dict[UUID, schemas.ContactGroup] = {}
        self.memberships: Dict[UUID, List[Contact]] = {}
        self.campaigns: Dict[UUID, schemas.Campaign] = {}
        self.messages: Dict[UUID, schemas.CampaignMessage] = {}
        self.analytics: Dict[UUID, schemas.CampaignAnalytics] = {}
        self.jobs: Dict[UUID, schemas.DispatchJob] = {}

    # Fixtures ------------------------------------------------------------------
    def add_template(self, template: schemas.Template) -> schemas.Template:
        self.templates[template.id] = template
        return template

    def add_group(self, group: schemas.ContactGroup, contacts: Iterable[Contact] = ()) -> schemas.ContactGroup:
        self.groups[group.id] = group
        self.memberships.setdefault(group.id, []).extend(contacts)
        return group

    # Templates and audiences ---------------------------------------------------
    def get_template(self, template_id: UUID) -> Optional[schemas.Template]:
        return self.templates.get(template_id)

    def get_contact_group(self, group_id: UUID) -> Optional[schemas.ContactGroup]:
        return self.groups.get(group_id)

    def list_segment_contacts(self, segment_ids: Sequence[UUID]) -> List[Contact]:
        contacts: List[Contact] = []
        for segment_id in segment_ids:
            contacts.extend(self.memberships.get(segment_id, []))
        return contacts

    # Campaigns -----------------------------------------------------------------
    def create_campaign(
        self,
        *,
        name: str,
        template_id: UUID,
        target_segments: Sequence[UUID],
        schedule_type: schemas.ScheduleType,
        scheduled_at: Optional[datetime],
        template_variables: Dict[str, Any],
        variable_source: schemas.VariableSource,
        status: schemas.CampaignStatus,
        created_by: Optional[str],
        now: datetime,
    ) -> schemas.Campaign:
        campaign = schemas.Campaign(
            id=uuid.uuid4(),
            name=name,
            template_id=template_id,
            target_segments=list(target_segments),
            schedule_type=schedule_type,
            scheduled_at=scheduled_at,
            template_variables=dict(template_variables or {}),
            variable_source=variable_source,
            status=status,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.campaigns[campaign.id] = campaign
        return campaign

    def get_campaign(self, campaign_id: UUID) -> Optional[schemas.Campaign]:
        return self.campaigns.get(campaign_id)

    def transition_campaign(
        self,
        campaign_id: UUID,
        status: schemas.CampaignStatus,
        *,
        now: datetime,
        expected: Optional[Iterable[schemas.CampaignStatus]] = None,
    ) -> bool:
        campaign = self.campaigns.get(campaign_id)
        if campaign is None:
            return False
        if expected is not None and campaign.status not in set(expected):
            return False
        self.campaigns[campaign_id] = campaign.model_copy(
            update={"status": status, "updated_at": now}
        )
        return True

    # Campaign messages -----------------------------------------------------------
    def get_or_create_campaign_message(
        self, campaign_id: UUID, contact_id: UUID, phone_number: str, *, now: datetime
    ) -> Tuple[schemas.CampaignMessage, bool]:
        for message in self.messages.values():
            if message.campaign_id == campaign_id and message.contact_id == contact_id:
                return message, False
        message = schemas.CampaignMessage(
            id=uuid.uuid4(),
            campaign_id=campaign_id,
            contact_id=contact_id,
            phone_number=phone_number,
            created_at=now,
            updated_at=now,
        )
        self.messages[message.id] = message
        return message, True

    def _update_if_pending(self, message_id: UUID, **update: Any) -> None:
        message = self.messages.get(message_id)
        if message is None or message.status != schemas.CampaignMessageStatus.PENDING:
            return
        self.messages[message_id] = message.model_copy(update=update)

    def mark_message_sent(self, message_id: UUID, message_sid: str, *, now: datetime) -> None:
        self._update_if_pending(
            message_id,
            status=schemas.CampaignMessageStatus.SENT,
            message_sid=message_sid,
            sent_at=now,
            updated_at=now,
        )

    def mark_message_failed(
        self,
        message_id: UUID,
        *,
        error_code: Optional[str],
        error_message: Optional[str],
        now: datetime,
    ) -> None:
        self._update_if_pending(
            message_id,
            status=schemas.CampaignMessageStatus.FAILED,
            error_code=error_code,
            error_message=error_message,
            updated_at=now,
        )

    def get_campaign_message_by_sid(
        self, message_sid: str
    ) -> Optional[schemas.CampaignMessage]:
        for message in self.messages.values():
            if message.message_sid == message_sid:
                return message
        return None

    def update_message_status(
        self,
        message_id: UUID,
        status: schemas.CampaignMessageStatus,
        *,
        allowed_from: Iterable[schemas.CampaignMessageStatus],
        now: datetime,
        delivered_at: Optional[datetime] = None,
        read_at: Optional[datetime] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        message = self.messages.get(message_id)
        if message is None or message.status not in set(allowed_from):
            return False
        self.messages[message_id] = message.model_copy(
            update={
                "status": status,
                "delivered_at": message.delivered_at or delivered_at,
                "read_at": message.read_at or read_at,
                "error_code": error_code or message.error_code,
                "error_message": error_message or message.error_message,
                "updated_at": now,
            }
        )
        return True

    def list_campaign_messages(self, campaign_id: UUID) -> List[schemas.CampaignMessage]:
        items = [m for m in self.messages.values() if m.campaign_id == campaign_id]
        items.sort(key=lambda m: m.created_at)
        return items

    def message_status_counts(self, campaign_id: UUID) -> Dict[str, int]:
        counts = Counter(
            m.status.value for m in self.messages.values() if m.campaign_id == campaign_id
        )
        return dict(counts)

    # Analytics -------------------------------------------------------------------
    def save_analytics(self, analytics: schemas.CampaignAnalytics) -> None:
        self.analytics[analytics.campaign_id] = analytics

    def get_analytics(self, campaign_id: UUID) -> Optional[schemas.CampaignAnalytics]:
        return self.analytics.get(campaign_id)

    # Dispatch jobs ---------------------------------------------------------------
    def create_dispatch_job(
        self, campaign_id: UUID, *, batch_size: int, delay_ms: int, now: datetime
    ) -> schemas.DispatchJob:
        job = schemas.DispatchJob(
            id=uuid.uuid4(),
            campaign_id=campaign_id,
            batch_size=batch_size,
            delay_ms=delay_ms,
            created_at=now,
        )
        self.jobs[job.id] = job
        return job

    def update_dispatch_job(self, job_id: UUID, **fields: Any) -> None:
        unknown = set(fields) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown dispatch job fields: {sorted(unknown)}")
        job = self.jobs.get(job_id)
        if job is not None:
            self.jobs[job_id] = job.model_copy(update=fields)

    def get_dispatch_job(self, job_id: UUID) -> Optional[schemas.DispatchJob]:
        return self.jobs.get(job_id)

    def list_dispatch_jobs(self, campaign_id: UUID) -> List[schemas.DispatchJob]:
        jobs = [j for j in self.jobs.values() if j.campaign_id == campaign_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs
