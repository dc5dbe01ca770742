"""
Call model - every voice call attempt for a lead (the call-channel ScheduledContact).
New-lead funnel: attempt 1 scheduled on creation, attempt 2 created only from
attempt 1's completion webhook. At most one `scheduled` call per lead.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base

PENDING_CALL_PREDICATE = "status = 'scheduled'"


class Call(Base):
    __tablename__ = "calls"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )

    direction: Mapped[str] = mapped_column(String(10), default="outbound")  # inbound, outbound
    status: Mapped[str] = mapped_column(
        String(20), default="scheduled"
    )  # scheduled, queued, ringing, in-progress, completed, failed, busy, no-answer, canceled
    call_type: Mapped[str] = mapped_column(
        String(20), default="new_lead"
    )  # new_lead, follow_up, reactivation, inbound
    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    is_voicemail: Mapped[bool] = mapped_column(Boolean, default=False)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    provider_call_id: Mapped[Optional[str]] = mapped_column(String(64))
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(String(500))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_calls_lead_id", "lead_id"),
        Index("ix_calls_due", "status", "scheduled_at"),
        Index("ix_calls_provider_call_id", "provider_call_id"),
        Index(
            "uq_calls_lead_pending",
            "lead_id",
            unique=True,
            postgresql_where=text(PENDING_CALL_PREDICATE),
            sqlite_where=text(PENDING_CALL_PREDICATE),
        ),
    )

    @property
    def timeline_at(self) -> datetime:
        """When the call entered the conversation."""
        return self.started_at or self.scheduled_at or self.created_at

    def __repr__(self) -> str:
        return f"<Call {self.call_type} #{self.attempt_number} status={self.status}>"
