"""Create contacts, conversations, messages and campaign tracking tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_create_messaging_tables"
down_revision = None
branch_labels = None
depends_on = None


_UUID = postgresql.UUID(as_uuid=True)
_NOW = sa.text("timezone('utc', now())")


def _id() -> sa.Column:
    return sa.Column(
        "id",
        _UUID,
        primary_key=True,
        nullable=False,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
    ]


def upgrade() -> None:
    op.create_table(
        "contact_groups",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "contacts",
        _id(),
        sa.Column("phone_number", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("first_name", sa.String(255), nullable=True),
        sa.Column("last_name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("company_name", sa.String(255), nullable=True),
        sa.Column(
            "custom_fields",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
    )

    op.create_table(
        "contact_group_members",
        sa.Column(
            "group_id",
            _UUID,
            sa.ForeignKey("contact_groups.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "contact_id",
            _UUID,
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("added_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
    )
    op.create_index("ix_contact_group_members_contact", "contact_group_members", ["contact_id"])

    op.create_table(
        "templates",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("content_sid", sa.String(64), nullable=True),
        sa.Column("body", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column(
            "variables",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
    )

    op.create_table(
        "campaigns",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column(
            "template_id",
            _UUID,
            sa.ForeignKey("templates.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "target_segments",
            postgresql.ARRAY(_UUID),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("schedule_type", sa.String(16), nullable=False),
        sa.Column("scheduled_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "template_variables",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("variable_source", sa.String(16), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("created_by", sa.String(255), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "conversations",
        _id(),
        sa.Column(
            "contact_id",
            _UUID,
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("visibility", sa.String(16), nullable=False, server_default="active"),
        sa.Column("last_message_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_customer_message_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("window_expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_by_campaign",
            _UUID,
            sa.ForeignKey("campaigns.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("activated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_conversations_contact_id", "conversations", ["contact_id", "created_at"])
    op.create_index(
        "ix_conversations_open_window",
        "conversations",
        ["window_expires_at"],
        postgresql_where=sa.text("status <> 'closed'"),
    )
    op.create_index("ix_conversations_campaign", "conversations", ["created_by_campaign"])

    op.create_table(
        "messages",
        _id(),
        sa.Column(
            "conversation_id",
            _UUID,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("direction", sa.String(16), nullable=False),
        sa.Column("message_type", sa.String(16), nullable=False, server_default="text"),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("media_content_type", sa.String(128), nullable=True),
        sa.Column("message_sid", sa.String(64), nullable=True, unique=True),
        sa.Column("provider_status", sa.String(32), nullable=True),
        sa.Column("sent_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
    )
    op.create_index("ix_messages_conversation", "messages", ["conversation_id", "created_at"])

    op.create_table(
        "campaign_messages",
        _id(),
        sa.Column(
            "campaign_id",
            _UUID,
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            _UUID,
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("message_sid", sa.String(64), nullable=True, unique=True),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("read_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("error_code", sa.String(32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("campaign_id", "contact_id", name="uq_campaign_messages_recipient"),
    )
    op.create_index("ix_campaign_messages_campaign", "campaign_messages", ["campaign_id", "status"])

    op.create_table(
        "campaign_analytics",
        sa.Column(
            "campaign_id",
            _UUID,
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("total_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_pending", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_read", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivery_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("read_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
    )

    op.create_table(
        "dispatch_jobs",
        _id(),
        sa.Column(
            "campaign_id",
            _UUID,
            sa.ForeignKey("campaigns.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(16), nullable=False, server_default="queued"),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        sa.Column("delay_ms", sa.Integer(), nullable=False),
        sa.Column("total_recipients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("log_path", sa.Text(), nullable=True),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_dispatch_jobs_campaign", "dispatch_jobs", ["campaign_id"])
