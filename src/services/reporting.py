"""
Reporting service - per-account calling statistics.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func, and_, or_, case
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.account import Account
from src.models.call import Call
from src.schemas.api_responses import CallingStats, CallTypeCounts
from src.utils.timezone import day_start, get_zoneinfo, quarter_start, utcnow

logger = logging.getLogger(__name__)


async def get_calling_stats(
    db: AsyncSession,
    account_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> CallingStats:
    """
    Outbound calls for the account this quarter and today (account-local),
    with completed counts and a per-call-type split of the quarter.
    Rows that never reached the provider are not counted.
    """
    account = await db.get(Account, account_id)
    if not account:
        raise ValueError(f"Account {account_id} not found")

    now = now or utcnow()
    tz = get_zoneinfo(account.timezone)
    since = quarter_start(now, tz)
    today = day_start(now, tz)

    completed = case((Call.status == "completed", 1), else_=0)
    placed_today = case((Call.created_at >= today, 1), else_=0)
    completed_today = case((and_(Call.created_at >= today, Call.status == "completed"), 1), else_=0)

    result = await db.execute(
        select(
            Call.call_type,
            func.count(Call.id),
            func.sum(completed),
            func.sum(placed_today),
            func.sum(completed_today),
        )
        .where(
            and_(
                Call.account_id == account_id,
                Call.direction == "outbound",
                Call.created_at >= since,
                Call.status != "scheduled",
                or_(Call.status != "canceled", Call.provider_call_id.isnot(None)),
            )
        )
        .group_by(Call.call_type)
    )

    stats = CallingStats(account_id=str(account_id))
    by_type = {}
    for call_type, total, done, total_today, done_today in result.all():
        by_type[call_type] = total
        stats.quarter_total += total
        stats.quarter_completed += done or 0
        stats.today_total += total_today or 0
        stats.today_completed += done_today or 0
    stats.call_types = CallTypeCounts(**by_type)
    return stats
