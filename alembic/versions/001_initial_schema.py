"""Initial schema - accounts, leads, messages, calls, event logs.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Accounts
    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("timezone", sa.String(64), server_default="America/New_York"),
        sa.Column("subscription_plan", sa.String(20), server_default="free"),
        sa.Column("grace_period_until", sa.DateTime(timezone=True)),
        sa.Column("policy", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_accounts_grace_period_until", "accounts", ["grace_period_until"])

    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("name", sa.String(200)),
        sa.Column("phone_number", sa.String(20)),
        sa.Column("status", sa.String(30), nullable=False, server_default="new"),
        sa.Column("ai_enabled", sa.Boolean, server_default=sa.true()),
        sa.Column("voice_calling_enabled", sa.Boolean, server_default=sa.true()),
        sa.Column("last_call_attempt", sa.DateTime(timezone=True)),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
        sa.Column("engagement_score", sa.Integer, server_default="0"),
        sa.Column("archived", sa.Boolean, server_default=sa.false()),
        sa.Column("archived_reason", sa.String(50)),
        sa.Column("archived_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_leads_account_id", "leads", ["account_id"])
    op.create_index("ix_leads_phone_number", "leads", ["phone_number"])
    op.create_index("ix_leads_status", "leads", ["status"])
    op.create_index("ix_leads_account_active", "leads", ["account_id", "archived"])

    # Messages
    op.create_table(
        "messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("sender", sa.String(10), nullable=False),
        sa.Column("direction", sa.String(10), server_default="outbound"),
        sa.Column("content", sa.Text),
        sa.Column("delivery_status", sa.String(20), server_default="scheduled"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True)),
        sa.Column("trigger", sa.String(20), server_default="follow_up"),
        sa.Column("call_fallback_type", sa.String(30)),
        sa.Column("provider_message_id", sa.String(64)),
        sa.Column("error_code", sa.String(20)),
        sa.Column("error_message", sa.Text),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_messages_lead_id", "messages", ["lead_id"])
    op.create_index("ix_messages_due", "messages", ["delivery_status", "scheduled_at"])
    op.create_index("ix_messages_provider_message_id", "messages", ["provider_message_id"])
    op.create_index(
        "uq_messages_lead_pending", "messages", ["lead_id"],
        unique=True,
        postgresql_where=sa.text("delivery_status = 'scheduled'"),
    )

    # Calls
    op.create_table(
        "calls",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("direction", sa.String(10), server_default="outbound"),
        sa.Column("status", sa.String(20), server_default="scheduled"),
        sa.Column("call_type", sa.String(20), server_default="new_lead"),
        sa.Column("attempt_number", sa.Integer, server_default="1"),
        sa.Column("is_voicemail", sa.Boolean, server_default=sa.false()),
        sa.Column("scheduled_at", sa.DateTime(timezone=True)),
        sa.Column("provider_call_id", sa.String(64)),
        sa.Column("duration_seconds", sa.Integer),
        sa.Column("error_message", sa.String(500)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("ended_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_calls_lead_id", "calls", ["lead_id"])
    op.create_index("ix_calls_due", "calls", ["status", "scheduled_at"])
    op.create_index("ix_calls_provider_call_id", "calls", ["provider_call_id"])
    op.create_index(
        "uq_calls_lead_pending", "calls", ["lead_id"],
        unique=True,
        postgresql_where=sa.text("status = 'scheduled'"),
    )

    # Event logs
    op.create_table(
        "event_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id")),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id")),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="success"),
        sa.Column("message", sa.Text),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_lead_id", "event_logs", ["lead_id"])
    op.create_index("ix_events_account_id", "event_logs", ["account_id"])
    op.create_index("ix_events_action", "event_logs", ["action"])


def downgrade() -> None:
    op.drop_table("event_logs")
    op.drop_table("calls")
    op.drop_table("messages")
    op.drop_table("leads")
    op.drop_table("accounts")
