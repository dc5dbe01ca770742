"""
Lead model - a prospective customer under nurture.
Status lifecycle: new -> in_conversation -> {converted | inactive},
with qualified / appointment_set as manual sub-states of the conversation track.
Never deleted by the orchestrator; archival is a soft flag.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )

    # Contact info
    name: Mapped[Optional[str]] = mapped_column(String(200))
    phone_number: Mapped[Optional[str]] = mapped_column(String(20))

    # Lifecycle
    status: Mapped[str] = mapped_column(String(30), default="new", nullable=False)
    ai_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    voice_calling_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Contact tracking
    last_call_attempt: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Written by the external scoring collaborator; higher survives downgrades
    engagement_score: Mapped[int] = mapped_column(Integer, default=0)

    # Archival (subscription downgrade)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(50))
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    account: Mapped["Account"] = relationship(back_populates="leads")

    __table_args__ = (
        Index("ix_leads_account_id", "account_id"),
        Index("ix_leads_phone_number", "phone_number"),
        Index("ix_leads_status", "status"),
        Index("ix_leads_account_active", "account_id", "archived"),
    )

    def __repr__(self) -> str:
        masked = self.phone_number[:6] + "***" if self.phone_number else "unknown"
        return f"<Lead {masked} status={self.status}>"
