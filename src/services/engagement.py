"""
Engagement event handlers - where external events enter the orchestrator.

    lead created            -> quota check, new-lead call funnel (or first follow-up text)
    inbound SMS             -> record, cancel pending texts, re-evaluate, debounced auto reply
    inbound call            -> record, re-evaluate
    message delivery status -> update row, re-evaluate
    call status             -> update row, funnel transition on terminal status, re-evaluate
    manual call request     -> same gates as dispatch, then an immediate call

Per-lead work runs under the Redis lead lock so a webhook and a dispatcher
tick never evaluate the same lead at once. Callers own the transaction.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.account import Account
from src.models.call import Call
from src.models.event_log import EventLog
from src.models.lead import Lead
from src.models.message import Message
from src.schemas.account_policy import AccountCommunicationPolicy
from src.schemas.communication import (
    CallCompletion,
    DeliveryStatusUpdate,
    FAILED_MESSAGE_STATUSES,
    TERMINAL_CALL_STATUSES,
)
from src.schemas.api_responses import ManualCallResult
from src.services.account_settings import policy_for
from src.services.call_coordinator import (
    CALL1_PENDING,
    CALL2_PENDING,
    handle_call_completion,
    lead_funnel_state,
    place_call_now,
    schedule_new_lead_calls,
)
from src.services.call_sessions import call_sessions
from src.services.calling_guard import determine_call_type, has_exceeded_quarterly_limit, is_within_calling_hours
from src.services.contact_scheduler import (
    cancel_scheduled_messages,
    ineligible_reason,
    schedule_auto_reply,
    schedule_next_follow_up,
)
from src.services.content import ContentGenerator
from src.services.gateway import CommunicationGateway
from src.services.lead_status import update_status_from_communications
from src.services.plan_limits import can_add_lead
from src.utils.locks import lead_lock
from src.utils.phone import mask_phone, normalize_phone_e164
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)

# Delivery progress order; a callback ranked below the stored status is stale
MESSAGE_STATUS_RANK = {
    "scheduled": 0,
    "queued": 1,
    "accepted": 1,
    "sending": 2,
    "sent": 3,
    "delivered": 4,
    "read": 5,
    **{status: 4 for status in FAILED_MESSAGE_STATUSES},
}


def _is_stale_message_status(current: str, incoming: str) -> bool:
    return MESSAGE_STATUS_RANK.get(incoming, 0) < MESSAGE_STATUS_RANK.get(current, 0)


async def find_lead_by_phone(db: AsyncSession, phone: str) -> Optional[Lead]:
    """Most recent active lead with this phone number."""
    phone = normalize_phone_e164(phone) or phone
    result = await db.execute(
        select(Lead)
        .where(and_(Lead.phone_number == phone, Lead.archived.is_(False)))
        .order_by(Lead.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def on_lead_created(
    db: AsyncSession,
    lead_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> dict:
    """
    Start outreach for a freshly created lead.

    Returns: {"status": "call_scheduled"|"follow_up_scheduled"|"over_limit"|"not_scheduled",
              "lead_id": str, "contact_id": str|None}
    """
    now = now or utcnow()
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise ValueError(f"Lead {lead_id} not found")
    account = await db.get(Account, lead.account_id)
    if not account:
        raise ValueError(f"Account {lead.account_id} not found")

    result = {"status": "not_scheduled", "lead_id": str(lead.id), "contact_id": None}

    if not await can_add_lead(db, account, lead_id=lead.id):
        db.add(EventLog(
            lead_id=lead.id,
            account_id=account.id,
            action="lead_over_plan_limit",
            status="skipped",
            message=f"Plan {account.subscription_plan} lead limit reached; outreach not started",
        ))
        logger.info(
            "Lead %s over plan limit (%s), outreach not started",
            str(lead.id)[:8], account.subscription_plan,
            extra={"lead_id": str(lead.id), "account_id": str(account.id)},
        )
        result["status"] = "over_limit"
        return result

    policy: AccountCommunicationPolicy = policy_for(account)
    async with lead_lock(str(lead.id)):
        if lead.voice_calling_enabled and policy.voice_calling_enabled:
            contact_id = await schedule_new_lead_calls(db, lead, now=now)
            if contact_id:
                result.update(status="call_scheduled", contact_id=str(contact_id))
                return result
        contact_id = await schedule_next_follow_up(db, lead, now=now)
        if contact_id:
            result.update(status="follow_up_scheduled", contact_id=str(contact_id))
    return result


async def handle_inbound_message(
    db: AsyncSession,
    from_number: str,
    body: str,
    provider_message_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Message]:
    """Record an inbound SMS and react to it. Unknown senders are logged and ignored."""
    now = now or utcnow()
    lead = await find_lead_by_phone(db, from_number)
    if not lead:
        logger.info("Inbound SMS from unknown number %s ignored", mask_phone(from_number))
        return None

    async with lead_lock(str(lead.id)):
        message = Message(
            lead_id=lead.id,
            account_id=lead.account_id,
            sender="lead",
            direction="inbound",
            content=body,
            delivery_status="received",
            trigger="inbound",
            provider_message_id=provider_message_id,
            sent_at=now,
        )
        db.add(message)
        lead.last_message_at = now
        await db.flush()
        logger.info(
            "Inbound SMS from lead %s", str(lead.id)[:8],
            extra={"lead_id": str(lead.id), "message_id": str(message.id), "channel": "message"},
        )

        await cancel_scheduled_messages(db, lead.id)
        await update_status_from_communications(db, lead.id, now=now)
        await schedule_auto_reply(db, lead, now=now)
    return message


async def handle_inbound_call(
    db: AsyncSession,
    from_number: str,
    provider_call_id: str,
    now: Optional[datetime] = None,
) -> Optional[Call]:
    """Record an inbound call from a known lead and re-evaluate its status."""
    now = now or utcnow()
    lead = await find_lead_by_phone(db, from_number)
    if not lead:
        logger.info("Inbound call from unknown number %s ignored", mask_phone(from_number))
        return None

    async with lead_lock(str(lead.id)):
        call = Call(
            lead_id=lead.id,
            account_id=lead.account_id,
            direction="inbound",
            status="in-progress",
            call_type="inbound",
            attempt_number=1,
            provider_call_id=provider_call_id,
            started_at=now,
        )
        db.add(call)
        lead.last_call_attempt = now
        await db.flush()
        logger.info(
            "Inbound call from lead %s", str(lead.id)[:8],
            extra={"lead_id": str(lead.id), "call_id": str(call.id), "channel": "call"},
        )
        await update_status_from_communications(db, lead.id, now=now)
    return call


async def handle_message_status(
    db: AsyncSession,
    update: DeliveryStatusUpdate,
    now: Optional[datetime] = None,
) -> Optional[Message]:
    """Apply a delivery status callback. Out-of-order callbacks never move a message backwards."""
    now = now or utcnow()
    result = await db.execute(
        select(Message).where(Message.provider_message_id == update.provider_message_id)
    )
    message = result.scalar_one_or_none()
    if not message:
        logger.info("Status for unknown message %s ignored", update.provider_message_id)
        return None

    if _is_stale_message_status(message.delivery_status, update.status):
        logger.info(
            "Stale status %s for message %s (already %s)",
            update.status, str(message.id)[:8], message.delivery_status,
            extra={"message_id": str(message.id), "lead_id": str(message.lead_id)},
        )
        return message

    async with lead_lock(str(message.lead_id)):
        message.delivery_status = update.status
        if update.error_code:
            message.error_code = update.error_code
            message.error_message = update.error_message
        await db.flush()
        logger.info(
            "Message %s status: %s", str(message.id)[:8], update.status,
            extra={
                "message_id": str(message.id),
                "lead_id": str(message.lead_id),
                "error_code": update.error_code,
                "channel": "message",
            },
        )
        await update_status_from_communications(db, message.lead_id, now=now)
    return message


async def handle_call_status(
    db: AsyncSession,
    completion: CallCompletion,
    gateway: CommunicationGateway,
    now: Optional[datetime] = None,
) -> Optional[Call]:
    """
    Apply a call status callback. Progress statuses (ringing, in-progress)
    only update the row; terminal statuses drive the call funnel.
    """
    now = now or utcnow()
    result = await db.execute(
        select(Call).where(Call.provider_call_id == completion.provider_call_id)
    )
    call = result.scalar_one_or_none()
    if not call:
        logger.info("Status for unknown call %s ignored", completion.provider_call_id)
        return None

    async with lead_lock(str(call.lead_id)):
        if completion.status not in TERMINAL_CALL_STATUSES:
            if call.status not in TERMINAL_CALL_STATUSES:
                call.status = completion.status
                await call_sessions.update(completion.provider_call_id, status=completion.status)
            return call

        await handle_call_completion(
            db,
            call.id,
            completion.status,
            completion.is_voicemail,
            completion.duration_seconds,
            gateway,
            now=now,
        )
        await call_sessions.close(completion.provider_call_id)
        await update_status_from_communications(db, call.lead_id, now=now)
    return call


async def initiate_manual_call(
    db: AsyncSession,
    lead_id: uuid.UUID,
    gateway: CommunicationGateway,
    content: Optional[ContentGenerator] = None,
    now: Optional[datetime] = None,
) -> ManualCallResult:
    """
    Place an on-demand call (an agent pressing "call now").

    Goes through the same gates as a dispatched call except spacing: lead
    eligibility, voice switches, calling hours and, for reactivation calls,
    the quarterly cap. A lead whose new-lead calls are still in flight is
    refused. Refusals come back as success=False with the failing rule.
    """
    now = now or utcnow()
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise ValueError(f"Lead {lead_id} not found")
    account = await db.get(Account, lead.account_id)
    policy = policy_for(account)
    tz = account.timezone if account else None

    def refuse(message: str, rule: str) -> ManualCallResult:
        logger.info(
            "Manual call for lead %s refused: %s", str(lead.id)[:8], message,
            extra={"lead_id": str(lead.id), "channel": "call"},
        )
        return ManualCallResult(success=False, message=message, lead_id=str(lead.id), rule=rule)

    async with lead_lock(str(lead.id)):
        reason = ineligible_reason(lead)
        if reason:
            return refuse(f"Lead cannot be called: {reason}", "ineligible")
        if not lead.voice_calling_enabled or not policy.voice_calling_enabled:
            return refuse("Voice calling is disabled", "voice_disabled")
        if not is_within_calling_hours(policy, tz, now):
            hours = policy.calling_hours
            return refuse(
                f"Calls are only allowed between {hours.start_hour}:00 and {hours.end_hour}:00",
                "calling_hours",
            )

        state = await lead_funnel_state(db, lead.id)
        if state in (CALL1_PENDING, CALL2_PENDING):
            return refuse("New-lead calls are still in progress", "funnel_in_progress")

        call_type = determine_call_type(lead)
        if call_type == "new_lead" and state is not None:
            # Call #1 exists but never connected; the funnel already owns new-lead attempts
            call_type = "follow_up"
        if call_type == "reactivation" and await has_exceeded_quarterly_limit(db, lead.id, policy, tz, now):
            return refuse("Quarterly call limit exceeded for this lead", "quarterly_limit")

        call = await place_call_now(db, lead, call_type, 1, gateway, content, now=now)
        await update_status_from_communications(db, lead.id, now=now)

    if call.status == "failed":
        return ManualCallResult(
            success=False,
            message="Failed to initiate call",
            lead_id=str(lead.id),
            call_id=str(call.id),
            call_type=call_type,
            rule="gateway_error",
        )
    return ManualCallResult(
        success=True,
        message="Call initiated successfully",
        lead_id=str(lead.id),
        call_id=str(call.id),
        call_type=call_type,
    )
