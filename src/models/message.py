"""
Message model - every SMS sent, scheduled or received for a lead.
Scheduled rows are the message-channel ScheduledContact: at most one
`scheduled` row per lead, enforced by a partial unique index.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base

PENDING_MESSAGE_PREDICATE = "delivery_status = 'scheduled'"


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )

    sender: Mapped[str] = mapped_column(String(10), nullable=False)  # agent, lead
    direction: Mapped[str] = mapped_column(
        String(10), default="outbound"
    )  # inbound, outbound
    content: Mapped[Optional[str]] = mapped_column(Text)

    delivery_status: Mapped[str] = mapped_column(
        String(20), default="scheduled"
    )  # scheduled, queued, sent, delivered, failed, undelivered, cancelled, received
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Why the message exists; consumed by the content generator
    trigger: Mapped[str] = mapped_column(
        String(20), default="follow_up"
    )  # follow_up, call_fallback, auto_reply, inbound
    call_fallback_type: Mapped[Optional[str]] = mapped_column(
        String(30)
    )  # voicemail_2calls, missed_2calls

    # Provider tracking
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(64))
    error_code: Mapped[Optional[str]] = mapped_column(String(20))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_messages_lead_id", "lead_id"),
        Index("ix_messages_due", "delivery_status", "scheduled_at"),
        Index("ix_messages_provider_message_id", "provider_message_id"),
        Index(
            "uq_messages_lead_pending",
            "lead_id",
            unique=True,
            postgresql_where=text(PENDING_MESSAGE_PREDICATE),
            sqlite_where=text(PENDING_MESSAGE_PREDICATE),
        ),
    )

    @property
    def timeline_at(self) -> datetime:
        """When the message entered the conversation."""
        return self.sent_at or self.scheduled_at or self.created_at

    def __repr__(self) -> str:
        return f"<Message {self.sender} {self.trigger} status={self.delivery_status}>"
