"""
Account model - a subscriber (agent/brokerage) whose leads are nurtured.
Carries the subscription plan, downgrade grace period and the communication
policy (intervals, calling hours, call quotas) as JSONB.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.database import Base


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="America/New_York")

    # Subscription
    subscription_plan: Mapped[str] = mapped_column(
        String(20), default="free"
    )  # free, pro, unlimited
    grace_period_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # AccountCommunicationPolicy as JSON (see src/schemas/account_policy.py)
    policy: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    leads: Mapped[list["Lead"]] = relationship(back_populates="account", lazy="select")

    __table_args__ = (
        Index("ix_accounts_grace_period_until", "grace_period_until"),
    )

    def __repr__(self) -> str:
        return f"<Account {self.name} plan={self.subscription_plan}>"
