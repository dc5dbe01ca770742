"""
Contact scheduler - decides when the next follow-up message or call is due.

Every pending contact is a row in `scheduled` state. The messages and calls
tables each carry a partial unique index on lead_id over scheduled rows, and
every insert here goes through INSERT .. ON CONFLICT DO NOTHING against it, so
"no pending contact yet, insert one" is a single atomic statement. Two
concurrent evaluations of the same lead cannot both win.

Scheduling never raises for an ineligible lead: it logs why and returns None.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, delete, update, and_, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import dialect_name
from src.models.call import Call, PENDING_CALL_PREDICATE
from src.models.event_log import EventLog
from src.models.lead import Lead
from src.models.message import Message, PENDING_MESSAGE_PREDICATE
from src.services.account_settings import get_account_policy
from src.services.contact_intervals import follow_up_interval_days
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)

_PENDING_PREDICATES = {
    Message: PENDING_MESSAGE_PREDICATE,
    Call: PENDING_CALL_PREDICATE,
}


def _insert_for(db: AsyncSession):
    """Dialect-specific insert construct (both support on_conflict_do_nothing)."""
    if dialect_name(db) == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


async def insert_scheduled(db: AsyncSession, model, values: dict) -> Optional[uuid.UUID]:
    """
    Insert a scheduled row unless the lead already has one pending on this channel.
    Returns the new row id, or None when the partial unique index rejected it.
    """
    insert = _insert_for(db)
    stmt = (
        insert(model)
        .values(id=uuid.uuid4(), **values)
        .on_conflict_do_nothing(
            index_elements=["lead_id"],
            index_where=text(_PENDING_PREDICATES[model]),
        )
        .returning(model.id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


def ineligible_reason(lead: Lead) -> Optional[str]:
    """Why no outreach may be scheduled for this lead, or None if it may."""
    if not lead.ai_enabled:
        return "AI disabled"
    if not lead.phone_number:
        return "no phone number"
    if lead.archived:
        return "archived"
    if lead.status == "converted":
        return "converted"
    return None


async def schedule_next_follow_up(
    db: AsyncSession,
    lead: Lead,
    now: Optional[datetime] = None,
) -> Optional[uuid.UUID]:
    """
    Schedule the next follow-up message at now + interval(status).
    No-op if the lead is ineligible or already has a scheduled message.
    """
    now = now or utcnow()
    reason = ineligible_reason(lead)
    if reason:
        logger.info(
            "No follow-up scheduled for lead %s: %s", str(lead.id)[:8], reason,
            extra={"lead_id": str(lead.id)},
        )
        return None

    policy = await get_account_policy(db, lead.account_id)
    days = follow_up_interval_days(lead.status, policy)
    scheduled_at = now + timedelta(days=days)

    message_id = await insert_scheduled(db, Message, {
        "lead_id": lead.id,
        "account_id": lead.account_id,
        "sender": "agent",
        "direction": "outbound",
        "delivery_status": "scheduled",
        "trigger": "follow_up",
        "scheduled_at": scheduled_at,
    })
    if message_id is None:
        logger.info(
            "Follow-up already pending for lead %s, skipping", str(lead.id)[:8],
            extra={"lead_id": str(lead.id)},
        )
        return None

    db.add(EventLog(
        lead_id=lead.id,
        account_id=lead.account_id,
        action="follow_up_scheduled",
        message=f"Follow-up message due in {days} days",
        data={"status": lead.status, "interval_days": days, "scheduled_at": scheduled_at.isoformat()},
    ))
    logger.info(
        "Follow-up scheduled for lead %s (%s, +%dd)", str(lead.id)[:8], lead.status, days,
        extra={"lead_id": str(lead.id), "channel": "message"},
    )
    return message_id


async def schedule_follow_up_calls(
    db: AsyncSession,
    lead: Lead,
    now: Optional[datetime] = None,
) -> Optional[uuid.UUID]:
    """
    Schedule a follow-up (or, for inactive leads, reactivation) call at now + interval.
    Same gates as messages plus the lead and account voice switches.
    """
    now = now or utcnow()
    reason = ineligible_reason(lead)
    if reason is None and not lead.voice_calling_enabled:
        reason = "voice calling disabled for lead"
    policy = await get_account_policy(db, lead.account_id)
    if reason is None and not policy.voice_calling_enabled:
        reason = "voice calling disabled for account"
    if reason:
        logger.info(
            "No follow-up call scheduled for lead %s: %s", str(lead.id)[:8], reason,
            extra={"lead_id": str(lead.id)},
        )
        return None

    call_type = "reactivation" if lead.status == "inactive" else "follow_up"
    days = follow_up_interval_days(lead.status, policy)

    call_id = await insert_scheduled(db, Call, {
        "lead_id": lead.id,
        "account_id": lead.account_id,
        "direction": "outbound",
        "status": "scheduled",
        "call_type": call_type,
        "attempt_number": 1,
        "scheduled_at": now + timedelta(days=days),
    })
    if call_id is None:
        logger.info(
            "Call already pending for lead %s, skipping", str(lead.id)[:8],
            extra={"lead_id": str(lead.id)},
        )
        return None

    db.add(EventLog(
        lead_id=lead.id,
        account_id=lead.account_id,
        action="call_scheduled",
        message=f"{call_type} call due in {days} days",
        data={"call_type": call_type, "interval_days": days},
    ))
    logger.info(
        "%s call scheduled for lead %s (+%dd)", call_type, str(lead.id)[:8], days,
        extra={"lead_id": str(lead.id), "channel": "call"},
    )
    return call_id


async def cancel_scheduled_messages(
    db: AsyncSession,
    lead_id: uuid.UUID,
    triggers: Optional[tuple[str, ...]] = None,
) -> int:
    """
    Delete the lead's still-scheduled outbound messages.
    Best effort: a row a dispatcher tick already claimed (queued) is left alone.
    Optionally restricted to specific triggers.
    """
    conditions = [Message.lead_id == lead_id, Message.delivery_status == "scheduled"]
    if triggers:
        conditions.append(Message.trigger.in_(triggers))
    result = await db.execute(delete(Message).where(and_(*conditions)))
    count = result.rowcount or 0
    if count:
        logger.info(
            "Cancelled %d scheduled message(s) for lead %s", count, str(lead_id)[:8],
            extra={"lead_id": str(lead_id), "channel": "message"},
        )
    return count


async def cancel_pending_contacts(db: AsyncSession, lead_id: uuid.UUID) -> tuple[int, int]:
    """
    Withdraw everything pending for a lead (converted or archived).
    Messages are deleted; scheduled calls are kept as canceled for the audit trail.
    Returns (messages, calls).
    """
    messages = await cancel_scheduled_messages(db, lead_id)
    result = await db.execute(
        update(Call)
        .where(and_(Call.lead_id == lead_id, Call.status == "scheduled"))
        .values(status="canceled", error_message="withdrawn before dispatch")
    )
    calls = result.rowcount or 0
    return messages, calls


async def schedule_auto_reply(
    db: AsyncSession,
    lead: Lead,
    now: Optional[datetime] = None,
) -> Optional[uuid.UUID]:
    """
    Debounced reply to an inbound message.
    Leads often reply in several parts; a pending auto reply is pushed back
    to now + debounce instead of queueing another one.
    """
    now = now or utcnow()
    reason = ineligible_reason(lead)
    if reason:
        logger.info(
            "No auto reply for lead %s: %s", str(lead.id)[:8], reason,
            extra={"lead_id": str(lead.id)},
        )
        return None

    due = now + timedelta(seconds=get_settings().auto_reply_debounce_seconds)

    result = await db.execute(
        select(Message).where(
            and_(
                Message.lead_id == lead.id,
                Message.delivery_status == "scheduled",
                Message.trigger == "auto_reply",
            )
        )
    )
    pending = result.scalar_one_or_none()
    if pending is not None:
        pending.scheduled_at = due
        logger.info(
            "Auto reply for lead %s pushed back to debounce window", str(lead.id)[:8],
            extra={"lead_id": str(lead.id), "message_id": str(pending.id)},
        )
        return pending.id

    await cancel_scheduled_messages(db, lead.id)
    message_id = await insert_scheduled(db, Message, {
        "lead_id": lead.id,
        "account_id": lead.account_id,
        "sender": "agent",
        "direction": "outbound",
        "delivery_status": "scheduled",
        "trigger": "auto_reply",
        "scheduled_at": due,
    })
    if message_id is not None:
        logger.info(
            "Auto reply scheduled for lead %s", str(lead.id)[:8],
            extra={"lead_id": str(lead.id), "message_id": str(message_id)},
        )
    return message_id
