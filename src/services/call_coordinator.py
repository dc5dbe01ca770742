"""
Call attempt coordinator - the new-lead call funnel.

    CALL1_PENDING -> CALL1_RESOLVED -> [CALL2_PENDING -> CALL2_RESOLVED] -> FALLBACK_SENT

Call #1 is scheduled when the lead is created and goes out through the
dispatcher. Call #2 is never pre-scheduled: it is placed directly from
Call #1's completion webhook. A funnel produces at most two calls and one
fallback text, and the channel decision rests only on voicemail detection
and attempt count.

Follow-up and reactivation calls get a bounded retry through the dispatcher
instead (policy.call_retry_attempts).
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.models.call import Call
from src.models.event_log import EventLog
from src.models.lead import Lead
from src.models.message import Message
from src.schemas.communication import FAILED_CALL_STATUSES, TERMINAL_CALL_STATUSES
from src.services.account_settings import get_account_policy
from src.services.call_sessions import call_sessions
from src.services.contact_scheduler import insert_scheduled, ineligible_reason, cancel_scheduled_messages
from src.services.content import ContentGenerator, get_content_generator
from src.services.gateway import CommunicationGateway
from src.utils.phone import sanitize_error
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)

CALL1_PENDING = "CALL1_PENDING"
CALL1_RESOLVED = "CALL1_RESOLVED"
CALL2_PENDING = "CALL2_PENDING"
CALL2_RESOLVED = "CALL2_RESOLVED"
FALLBACK_SENT = "FALLBACK_SENT"

FALLBACK_VOICEMAIL = "voicemail_2calls"
FALLBACK_MISSED = "missed_2calls"


def funnel_state(calls: Iterable[Call], messages: Iterable[Message] = ()) -> Optional[str]:
    """
    Where a lead's new-lead funnel stands, derived from its rows.
    None when the lead never entered the funnel.
    """
    by_attempt = {c.attempt_number: c for c in calls if c.call_type == "new_lead" and c.direction == "outbound"}
    if any(m.trigger == "call_fallback" for m in messages):
        return FALLBACK_SENT
    if 2 in by_attempt:
        return CALL2_RESOLVED if by_attempt[2].status in TERMINAL_CALL_STATUSES else CALL2_PENDING
    if 1 in by_attempt:
        return CALL1_RESOLVED if by_attempt[1].status in TERMINAL_CALL_STATUSES else CALL1_PENDING
    return None


async def lead_funnel_state(db: AsyncSession, lead_id: uuid.UUID) -> Optional[str]:
    calls = await db.execute(
        select(Call).where(and_(Call.lead_id == lead_id, Call.call_type == "new_lead"))
    )
    fallbacks = await db.execute(
        select(Message).where(and_(Message.lead_id == lead_id, Message.trigger == "call_fallback"))
    )
    return funnel_state(calls.scalars().all(), fallbacks.scalars().all())


def _funnel_skip_reason(lead: Lead, voice_enabled: bool) -> Optional[str]:
    reason = ineligible_reason(lead)
    if reason is None and not (lead.voice_calling_enabled and voice_enabled):
        reason = "voice calling disabled"
    return reason


async def schedule_new_lead_calls(
    db: AsyncSession,
    lead: Lead,
    now: Optional[datetime] = None,
) -> Optional[uuid.UUID]:
    """Schedule Call #1 immediately. Call #2 is only ever created reactively."""
    now = now or utcnow()
    policy = await get_account_policy(db, lead.account_id)
    reason = _funnel_skip_reason(lead, policy.voice_calling_enabled)
    if reason:
        logger.info(
            "New-lead call not scheduled for lead %s: %s", str(lead.id)[:8], reason,
            extra={"lead_id": str(lead.id)},
        )
        return None

    call_id = await insert_scheduled(db, Call, {
        "lead_id": lead.id,
        "account_id": lead.account_id,
        "direction": "outbound",
        "status": "scheduled",
        "call_type": "new_lead",
        "attempt_number": 1,
        "scheduled_at": now,
    })
    if call_id is None:
        logger.info(
            "Call already pending for lead %s, new-lead call not scheduled", str(lead.id)[:8],
            extra={"lead_id": str(lead.id)},
        )
        return None

    db.add(EventLog(
        lead_id=lead.id,
        account_id=lead.account_id,
        action="new_lead_call_scheduled",
        message="Call #1 scheduled",
        data={"attempt_number": 1},
    ))
    logger.info(
        "Call #1 scheduled for new lead %s", str(lead.id)[:8],
        extra={"lead_id": str(lead.id), "call_id": str(call_id), "channel": "call"},
    )
    return call_id


async def schedule_fallback_text(
    db: AsyncSession,
    lead: Lead,
    detected_voicemail: bool,
    now: Optional[datetime] = None,
) -> Optional[uuid.UUID]:
    """
    Schedule the immediate fallback SMS that closes the funnel.
    It supersedes a pending follow-up so it owns the lead's single pending
    message slot. A pending auto reply is kept and the fallback suppressed.
    At most one fallback per lead.
    """
    now = now or utcnow()
    fallback_type = FALLBACK_VOICEMAIL if detected_voicemail else FALLBACK_MISSED

    existing = await db.execute(
        select(Message.id).where(
            and_(Message.lead_id == lead.id, Message.trigger == "call_fallback")
        ).limit(1)
    )
    if existing.scalar_one_or_none() is not None:
        logger.info(
            "Fallback text already exists for lead %s, skipping", str(lead.id)[:8],
            extra={"lead_id": str(lead.id)},
        )
        return None

    await cancel_scheduled_messages(db, lead.id, triggers=("follow_up",))
    message_id = await insert_scheduled(db, Message, {
        "lead_id": lead.id,
        "account_id": lead.account_id,
        "sender": "agent",
        "direction": "outbound",
        "delivery_status": "scheduled",
        "trigger": "call_fallback",
        "call_fallback_type": fallback_type,
        "scheduled_at": now,
    })
    if message_id is None:
        # A pending auto reply answers the lead directly and outranks the fallback
        db.add(EventLog(
            lead_id=lead.id,
            account_id=lead.account_id,
            action="fallback_text_suppressed",
            status="skipped",
            message="Another message is pending for the lead",
            data={"call_fallback_type": fallback_type},
        ))
        logger.warning(
            "Another message is pending for lead %s, fallback %s suppressed", str(lead.id)[:8], fallback_type,
            extra={"lead_id": str(lead.id)},
        )
        return None

    db.add(EventLog(
        lead_id=lead.id,
        account_id=lead.account_id,
        action="fallback_text_scheduled",
        message=f"Fallback text scheduled ({fallback_type})",
        data={"call_fallback_type": fallback_type},
    ))
    logger.info(
        "Fallback text scheduled for lead %s (type: %s)", str(lead.id)[:8], fallback_type,
        extra={"lead_id": str(lead.id), "message_id": str(message_id), "channel": "message"},
    )
    return message_id


async def make_immediate_call(
    db: AsyncSession,
    lead: Lead,
    attempt_number: int,
    gateway: CommunicationGateway,
    content: Optional[ContentGenerator] = None,
    now: Optional[datetime] = None,
) -> Optional[Call]:
    """
    Place a new-lead call right away, bypassing the dispatcher.
    The row is created as queued, never scheduled, so no tick can pick it up.
    """
    now = now or utcnow()
    policy = await get_account_policy(db, lead.account_id)
    reason = _funnel_skip_reason(lead, policy.voice_calling_enabled)
    if reason:
        logger.info(
            "Call #%d not placed for lead %s: %s", attempt_number, str(lead.id)[:8], reason,
            extra={"lead_id": str(lead.id)},
        )
        return None

    existing = await db.execute(
        select(Call.id).where(
            and_(
                Call.lead_id == lead.id,
                Call.call_type == "new_lead",
                Call.attempt_number == attempt_number,
            )
        ).limit(1)
    )
    if existing.scalar_one_or_none() is not None:
        logger.info(
            "Call #%d already exists for lead %s, skipping", attempt_number, str(lead.id)[:8],
            extra={"lead_id": str(lead.id)},
        )
        return None

    call = await place_call_now(db, lead, "new_lead", attempt_number, gateway, content, now=now)
    # No completion webhook will come for a call that never left; close the funnel here
    if call.status == "failed" and attempt_number >= 2:
        await schedule_fallback_text(db, lead, detected_voicemail=False, now=now)
    return call


async def place_call_now(
    db: AsyncSession,
    lead: Lead,
    call_type: str,
    attempt_number: int,
    gateway: CommunicationGateway,
    content: Optional[ContentGenerator] = None,
    now: Optional[datetime] = None,
) -> Call:
    """
    Create a queued call row and hand it to the gateway immediately.
    Callers run their own gates first. A placement error leaves the row failed.
    """
    now = now or utcnow()
    call = Call(
        lead_id=lead.id,
        account_id=lead.account_id,
        direction="outbound",
        status="queued",
        call_type=call_type,
        attempt_number=attempt_number,
        scheduled_at=now,
    )
    db.add(call)
    await db.flush()

    content = content or get_content_generator()
    try:
        script = await content.render_call_script(lead, call.call_type)
        placement = await asyncio.wait_for(
            gateway.place_call(lead.phone_number, call.call_type, attempt_number, script),
            timeout=get_settings().gateway_timeout_seconds,
        )
    except Exception as e:
        error = "gateway timeout" if isinstance(e, asyncio.TimeoutError) else sanitize_error(str(e))
        call.status = "failed"
        call.error_message = error[:500]
        call.ended_at = now
        db.add(EventLog(
            lead_id=lead.id,
            account_id=lead.account_id,
            action="call_dispatch_failed",
            status="failure",
            message=f"{call_type} call #{attempt_number} failed to place: {error}",
            data={"call_id": str(call.id), "call_type": call_type, "attempt_number": attempt_number},
        ))
        logger.error(
            "%s call #%d placement failed for lead %s: %s", call_type, attempt_number, str(lead.id)[:8], error,
            extra={"lead_id": str(lead.id), "call_id": str(call.id), "error_code": getattr(e, "error_code", None)},
        )
        return call

    call.provider_call_id = placement.provider_call_id
    call.started_at = now
    lead.last_call_attempt = now
    await call_sessions.open(
        placement.provider_call_id, call.id, lead.id, call.call_type, attempt_number,
    )
    db.add(EventLog(
        lead_id=lead.id,
        account_id=lead.account_id,
        action="call_dispatched",
        message=f"{call_type} call #{attempt_number} placed immediately",
        data={"call_id": str(call.id), "provider_call_id": placement.provider_call_id},
    ))
    logger.info(
        "%s call #%d placed immediately for lead %s", call_type, attempt_number, str(lead.id)[:8],
        extra={"lead_id": str(lead.id), "call_id": str(call.id), "channel": "call"},
    )
    return call


async def _schedule_retry(db: AsyncSession, lead: Lead, call: Call, now: datetime) -> Optional[uuid.UUID]:
    """Queue the next follow-up/reactivation attempt through the dispatcher."""
    policy = await get_account_policy(db, lead.account_id)
    if call.attempt_number >= policy.call_retry_attempts:
        logger.info(
            "%s call for lead %s exhausted %d attempt(s)",
            call.call_type, str(lead.id)[:8], policy.call_retry_attempts,
            extra={"lead_id": str(lead.id), "call_id": str(call.id)},
        )
        return None
    if _funnel_skip_reason(lead, policy.voice_calling_enabled):
        return None

    retry_id = await insert_scheduled(db, Call, {
        "lead_id": lead.id,
        "account_id": lead.account_id,
        "direction": "outbound",
        "status": "scheduled",
        "call_type": call.call_type,
        "attempt_number": call.attempt_number + 1,
        "scheduled_at": now + timedelta(hours=policy.min_hours_between_calls),
    })
    if retry_id is not None:
        logger.info(
            "%s call retry #%d scheduled for lead %s",
            call.call_type, call.attempt_number + 1, str(lead.id)[:8],
            extra={"lead_id": str(lead.id), "call_id": str(retry_id), "channel": "call"},
        )
    return retry_id


async def handle_call_completion(
    db: AsyncSession,
    call_id: uuid.UUID,
    status: str,
    is_voicemail: bool,
    duration: Optional[int],
    gateway: CommunicationGateway,
    now: Optional[datetime] = None,
) -> Optional[Call]:
    """
    Apply a terminal call outcome and advance the funnel.

    New-lead Call #1: answered -> done; voicemail -> fallback text (a second
    call would reach the same voicemail); other failure -> Call #2 now.
    New-lead Call #2: answered -> done; anything else -> fallback text.
    A completion for an already-resolved call is ignored.
    """
    now = now or utcnow()
    call = await db.get(Call, call_id)
    if not call:
        logger.warning("Completion for unknown call %s", str(call_id)[:8])
        return None

    if call.status in TERMINAL_CALL_STATUSES:
        logger.info(
            "Call %s already resolved (%s), ignoring %s", str(call.id)[:8], call.status, status,
            extra={"call_id": str(call.id), "lead_id": str(call.lead_id)},
        )
        return call

    call.status = status
    call.is_voicemail = is_voicemail
    call.duration_seconds = duration
    call.ended_at = now
    await db.flush()

    if call.direction != "outbound":
        return call

    answered = status == "completed" and not is_voicemail
    lead = await db.get(Lead, call.lead_id)
    if not lead:
        logger.warning("Call %s has no lead", str(call.id)[:8], extra={"call_id": str(call.id)})
        return call

    outcome = "voicemail" if is_voicemail else status
    log_extra = {"lead_id": str(lead.id), "call_id": str(call.id), "channel": "call"}

    if call.call_type == "new_lead":
        if answered:
            logger.info("Call #%d answered by lead %s, funnel done", call.attempt_number, str(lead.id)[:8], extra=log_extra)
        elif call.attempt_number == 1 and is_voicemail:
            logger.info("Call #1 hit voicemail for lead %s, skipping Call #2", str(lead.id)[:8], extra=log_extra)
            await schedule_fallback_text(db, lead, detected_voicemail=True, now=now)
        elif call.attempt_number == 1:
            logger.info("Call #1 %s for lead %s, placing Call #2", outcome, str(lead.id)[:8], extra=log_extra)
            await make_immediate_call(db, lead, 2, gateway, now=now)
        else:
            logger.info("Call #2 %s for lead %s, scheduling fallback text", outcome, str(lead.id)[:8], extra=log_extra)
            await schedule_fallback_text(db, lead, detected_voicemail=is_voicemail, now=now)
        logger.info(
            "New-lead funnel for lead %s now %s", str(lead.id)[:8], await lead_funnel_state(db, lead.id),
            extra=log_extra,
        )
    elif status in FAILED_CALL_STATUSES:
        await _schedule_retry(db, lead, call, now)
    else:
        logger.info("%s call for lead %s completed: %s", call.call_type, str(lead.id)[:8], outcome, extra=log_extra)

    return call
