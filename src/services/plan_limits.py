"""
Plan-based lead limits and downgrade archival.

Central source of truth for how many active leads each subscription plan
includes. A downgrade that leaves an account over its new limit starts a
grace period instead of archiving immediately; the grace-period sweeper
archives the lowest-priority excess leads once it expires.

Priority is engagement_score descending, then most recently created.
The score itself is written by an external scoring job.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.models.account import Account
from src.models.event_log import EventLog
from src.models.lead import Lead
from src.services.contact_scheduler import cancel_pending_contacts
from src.utils.timezone import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DOWNGRADE_GRACE_PERIOD_DAYS = 30
ARCHIVE_REASON_DOWNGRADE = "subscription_downgrade"

PLAN_LIMITS: dict[str, dict] = {
    "free": {
        "lead_limit": 10,
    },
    "pro": {
        "lead_limit": 1000,
    },
    "unlimited": {
        "lead_limit": None,  # unlimited
    },
}


class DowngradeResult(BaseModel):
    account_id: uuid.UUID
    old_plan: str
    new_plan: str
    lead_limit: Optional[int]
    active_leads: int
    excess_leads: int
    grace_period_until: Optional[datetime] = None


def get_plan_limits(plan: str) -> dict:
    """Get limits for a given plan. Defaults to free for unknown plans."""
    return PLAN_LIMITS.get(plan, PLAN_LIMITS["free"])


def get_lead_limit(plan: str) -> Optional[int]:
    """Get the active lead limit. None means unlimited."""
    return get_plan_limits(plan)["lead_limit"]


def _grace_period_days() -> int:
    return get_settings().downgrade_grace_period_days or DOWNGRADE_GRACE_PERIOD_DAYS


async def count_active_leads(
    db: AsyncSession,
    account_id: uuid.UUID,
    exclude_lead_id: Optional[uuid.UUID] = None,
) -> int:
    conditions = [Lead.account_id == account_id, Lead.archived.is_(False)]
    if exclude_lead_id is not None:
        conditions.append(Lead.id != exclude_lead_id)
    result = await db.execute(select(func.count(Lead.id)).where(and_(*conditions)))
    return result.scalar() or 0


async def can_add_lead(
    db: AsyncSession,
    account: Account,
    lead_id: Optional[uuid.UUID] = None,
) -> bool:
    """
    Lead-count quota check for a new lead.
    Pass lead_id when the lead row already exists so it is not counted against itself.
    """
    limit = get_lead_limit(account.subscription_plan)
    if limit is None:
        return True
    return await count_active_leads(db, account.id, exclude_lead_id=lead_id) < limit


async def handle_subscription_downgrade(
    db: AsyncSession,
    account_id: uuid.UUID,
    new_plan: str,
    now: Optional[datetime] = None,
) -> DowngradeResult:
    """
    Apply a plan change.
    Within the new limit (upgrades included): any grace period is cleared.
    Over the new limit: a grace period starts and nothing is archived yet.
    """
    now = now or utcnow()
    account = await db.get(Account, account_id)
    if not account:
        raise ValueError(f"Account {account_id} not found")

    old_plan = account.subscription_plan
    limit = get_lead_limit(new_plan)
    active = await count_active_leads(db, account.id)
    excess = max(0, active - limit) if limit is not None else 0

    account.subscription_plan = new_plan
    if excess:
        account.grace_period_until = now + timedelta(days=_grace_period_days())
        logger.info(
            "Account %s downgraded %s -> %s with %d excess leads; grace period until %s",
            str(account.id)[:8], old_plan, new_plan, excess, account.grace_period_until.isoformat(),
            extra={"account_id": str(account.id)},
        )
    else:
        if account.grace_period_until is not None:
            logger.info(
                "Account %s plan %s -> %s within limit; grace period cleared",
                str(account.id)[:8], old_plan, new_plan,
                extra={"account_id": str(account.id)},
            )
        account.grace_period_until = None

    db.add(EventLog(
        account_id=account.id,
        action="plan_changed",
        message=f"{old_plan} -> {new_plan}",
        data={"active_leads": active, "lead_limit": limit, "excess": excess},
    ))
    await db.flush()

    return DowngradeResult(
        account_id=account.id,
        old_plan=old_plan,
        new_plan=new_plan,
        lead_limit=limit,
        active_leads=active,
        excess_leads=excess,
        grace_period_until=account.grace_period_until,
    )


async def archive_excess_leads(
    db: AsyncSession,
    account_id: uuid.UUID,
    keep_limit: Optional[int],
    now: Optional[datetime] = None,
) -> int:
    """
    Keep the top `keep_limit` active leads by priority, archive the rest and
    withdraw their pending contacts. Clears the grace period. Returns the
    number archived.
    """
    now = now or utcnow()
    account = await db.get(Account, account_id)
    if not account:
        raise ValueError(f"Account {account_id} not found")

    archived = 0
    if keep_limit is not None:
        result = await db.execute(
            select(Lead)
            .where(and_(Lead.account_id == account_id, Lead.archived.is_(False)))
            .order_by(Lead.engagement_score.desc(), Lead.created_at.desc())
            .offset(keep_limit)
        )
        for lead in result.scalars().all():
            lead.archived = True
            lead.archived_reason = ARCHIVE_REASON_DOWNGRADE
            lead.archived_at = now
            await cancel_pending_contacts(db, lead.id)
            archived += 1

    account.grace_period_until = None
    db.add(EventLog(
        account_id=account.id,
        action="leads_archived",
        message=f"Archived {archived} lead(s) down to plan limit {keep_limit}",
        data={"archived": archived, "keep_limit": keep_limit, "reason": ARCHIVE_REASON_DOWNGRADE},
    ))
    await db.flush()

    logger.info(
        "Archived %d excess lead(s) for account %s (limit %s)",
        archived, str(account.id)[:8], keep_limit,
        extra={"account_id": str(account.id)},
    )
    return archived


async def process_expired_grace_periods(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> dict:
    """
    Archive down to the plan limit for every account whose grace period has expired.
    One failing account does not stop the sweep.

    Returns: {"accounts": int, "archived": int, "errors": int}
    """
    now = now or utcnow()
    result = await db.execute(
        select(Account.id).where(
            and_(Account.grace_period_until.isnot(None), Account.grace_period_until <= now)
        )
    )
    account_ids = list(result.scalars().all())

    stats = {"accounts": 0, "archived": 0, "errors": 0}
    for account_id in account_ids:
        try:
            account = await db.get(Account, account_id)
            # Re-check after load; the plan may have been upgraded meanwhile
            if account.grace_period_until is None or ensure_utc(account.grace_period_until) > now:
                continue
            limit = get_lead_limit(account.subscription_plan)
            archived = await archive_excess_leads(db, account.id, limit, now=now)
            await db.commit()
            stats["archived"] += archived
            stats["accounts"] += 1
        except Exception as e:
            await db.rollback()
            stats["errors"] += 1
            logger.error(
                "Grace period archival failed for account %s: %s",
                str(account_id)[:8], str(e),
                exc_info=True,
                extra={"account_id": str(account_id)},
            )

    if account_ids:
        logger.info(
            "Grace period sweep: %d account(s), %d lead(s) archived, %d error(s)",
            stats["accounts"], stats["archived"], stats["errors"],
        )
    return stats
