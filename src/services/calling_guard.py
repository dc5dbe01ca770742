"""
Calling guard - the gate every due call and message passes before dispatch.

Checks performed for calls:
1. Lead still eligible (not archived, AI on, phone present, not converted)
2. Voice calling enabled for the lead and the account
3. Calling hours (account-local start/end hour and allowed weekdays)
4. Quarterly call cap (reactivation calls only)
5. Minimum spacing since the last call attempt

A failed check either DEFERS (row stays scheduled and is re-evaluated next
tick) or SKIPS (row is withdrawn). Outside-hours, the quarterly cap and
spacing defer; lead-level gates skip.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.account import Account
from src.models.call import Call
from src.models.lead import Lead
from src.models.message import Message
from src.schemas.account_policy import AccountCommunicationPolicy
from src.services.account_settings import policy_for
from src.utils.timezone import ensure_utc, get_zoneinfo, quarter_start, to_local, utcnow, weekday_name

logger = logging.getLogger(__name__)

DEFER = "defer"
SKIP = "skip"


class GuardResult:
    """Result of a dispatch check."""

    def __init__(self, allowed: bool, reason: str = "", rule: str = "", action: Optional[str] = None):
        self.allowed = allowed
        self.reason = reason
        self.rule = rule
        self.action = action

    @classmethod
    def allow(cls) -> "GuardResult":
        return cls(True, "All checks passed")

    @classmethod
    def defer(cls, reason: str, rule: str) -> "GuardResult":
        return cls(False, reason, rule, DEFER)

    @classmethod
    def skip(cls, reason: str, rule: str) -> "GuardResult":
        return cls(False, reason, rule, SKIP)

    @property
    def deferred(self) -> bool:
        return self.action == DEFER

    def __bool__(self) -> bool:
        return self.allowed

    def __repr__(self) -> str:
        status = "ALLOWED" if self.allowed else self.action.upper()
        return f"<GuardResult {status}: {self.reason}>"


def is_within_calling_hours(
    policy: AccountCommunicationPolicy,
    timezone_str: Optional[str],
    now: Optional[datetime] = None,
) -> bool:
    """start_hour <= local hour < end_hour and the local weekday is allowed."""
    hours = policy.calling_hours
    local = to_local(now or utcnow(), get_zoneinfo(timezone_str))
    if weekday_name(local) not in hours.days:
        return False
    return hours.start_hour <= local.hour < hours.end_hour


async def has_exceeded_quarterly_limit(
    db: AsyncSession,
    lead_id: uuid.UUID,
    policy: AccountCommunicationPolicy,
    timezone_str: Optional[str] = None,
    now: Optional[datetime] = None,
    exclude_call_id: Optional[uuid.UUID] = None,
) -> bool:
    """
    Count outbound calls to the lead created this calendar quarter.
    Rows that never reached the provider (still scheduled, or withdrawn
    before placement) don't count.
    """
    since = quarter_start(now or utcnow(), get_zoneinfo(timezone_str))
    conditions = [
        Call.lead_id == lead_id,
        Call.direction == "outbound",
        Call.created_at >= since,
        Call.status != "scheduled",
        or_(Call.status != "canceled", Call.provider_call_id.isnot(None)),
    ]
    if exclude_call_id is not None:
        conditions.append(Call.id != exclude_call_id)

    result = await db.execute(select(func.count(Call.id)).where(and_(*conditions)))
    count = result.scalar() or 0
    return count >= policy.quarterly_call_limit


def can_make_call_attempt(
    lead: Lead,
    min_hours: float,
    now: Optional[datetime] = None,
) -> bool:
    """True if the lead was never called or the last attempt is at least min_hours old."""
    last = ensure_utc(lead.last_call_attempt)
    if last is None:
        return True
    return (now or utcnow()) - last >= timedelta(hours=min_hours)


def determine_call_type(lead: Lead) -> str:
    """new_lead if never called, reactivation if inactive, otherwise follow_up."""
    if lead.last_call_attempt is None:
        return "new_lead"
    if lead.status == "inactive":
        return "reactivation"
    return "follow_up"


def _min_spacing_hours(call: Call, policy: AccountCommunicationPolicy) -> float:
    # new-lead and reactivation calls are limited to one per day
    if call.call_type in ("new_lead", "reactivation"):
        return policy.new_lead_min_hours_between_calls
    return policy.min_hours_between_calls


def _lead_skip_reason(lead: Lead) -> Optional[tuple[str, str]]:
    if lead.archived:
        return "Lead archived", "archived"
    if not lead.ai_enabled:
        return "AI disabled for lead", "ai_disabled"
    if not lead.phone_number:
        return "Lead has no phone number", "no_phone"
    return None


async def check_call_dispatch(
    db: AsyncSession,
    lead: Lead,
    account: Optional[Account],
    call: Call,
    now: Optional[datetime] = None,
) -> GuardResult:
    """Run every call check in order. First failure wins."""
    now = now or utcnow()
    policy = policy_for(account)
    tz = account.timezone if account else None

    skip = _lead_skip_reason(lead)
    if skip:
        return GuardResult.skip(*skip)
    if lead.status == "converted":
        return GuardResult.skip("Lead converted", "converted")
    if not lead.voice_calling_enabled or not policy.voice_calling_enabled:
        return GuardResult.skip("Voice calling disabled", "voice_disabled")

    if not is_within_calling_hours(policy, tz, now):
        hours = policy.calling_hours
        return GuardResult.defer(
            f"Outside calling hours ({hours.start_hour}:00-{hours.end_hour}:00 {tz or 'default tz'})",
            "calling_hours",
        )

    if call.call_type == "reactivation" and await has_exceeded_quarterly_limit(
        db, lead.id, policy, tz, now, exclude_call_id=call.id,
    ):
        return GuardResult.defer(
            f"Quarterly call limit ({policy.quarterly_call_limit}) reached",
            "quarterly_limit",
        )

    min_hours = _min_spacing_hours(call, policy)
    if not can_make_call_attempt(lead, min_hours, now):
        return GuardResult.defer(
            f"Last call attempt less than {min_hours:g}h ago",
            "call_spacing",
        )

    return GuardResult.allow()


def check_message_dispatch(lead: Lead, message: Optional[Message] = None) -> GuardResult:
    """
    Message checks. Converted leads still receive a call fallback text
    (it closes a funnel that started before conversion); nothing else.
    """
    skip = _lead_skip_reason(lead)
    if skip:
        return GuardResult.skip(*skip)
    trigger = message.trigger if message is not None else None
    if lead.status == "converted" and trigger != "call_fallback":
        return GuardResult.skip("Lead converted", "converted")
    return GuardResult.allow()
