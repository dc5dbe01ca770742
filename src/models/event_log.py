"""
Event log model - audit trail for status transitions, scheduling, dispatch and archival.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class EventLog(Base):
    __tablename__ = "event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id")
    )
    account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id")
    )

    action: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # status_changed, follow_up_scheduled, call_dispatched, leads_archived, ...
    status: Mapped[str] = mapped_column(
        String(20), default="success"
    )  # success, failure, skipped, deferred
    message: Mapped[Optional[str]] = mapped_column(Text)
    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_events_lead_id", "lead_id"),
        Index("ix_events_account_id", "account_id"),
        Index("ix_events_action", "action"),
    )

    def __repr__(self) -> str:
        return f"<EventLog {self.action} status={self.status}>"
