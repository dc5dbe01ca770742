"""
Contact dispatcher - sends due calls and messages through the communication gateway.
Runs every 20 seconds. Calling guard check before every call and message.

Each tick:
1. Calls: due `scheduled` rows, oldest first, at most 3 dispatched per tick.
   New-lead Call #2 rows belong to the call coordinator and are never selected.
2. Messages: due `scheduled` rows, oldest first, at most 5 sent per tick.

Per item: guard -> defer (row untouched) | skip (row withdrawn) | dispatch.
Dispatch claims the row as `queued`, renders content, calls the gateway with a
timeout and records the outcome. A failure marks the row `failed` and the tick
moves on. Failed dispatches are not retried; a failed or skipped call leaves
the lead with its next natural follow-up message instead.

Ticks are non-reentrant across replicas via a Redis tick lock.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import async_session_factory
from src.models.account import Account
from src.models.call import Call
from src.models.event_log import EventLog
from src.models.lead import Lead
from src.models.message import Message
from src.services.call_sessions import call_sessions
from src.services.calling_guard import check_call_dispatch, check_message_dispatch
from src.services.contact_scheduler import schedule_next_follow_up
from src.services.content import ContentGenerator, get_content_generator
from src.services.gateway import CommunicationGateway, get_gateway
from src.services.lead_status import update_status_from_communications
from src.utils.locks import lead_lock, tick_lock, LockTimeoutError
from src.utils.logging import new_tick_correlation_id
from src.utils.phone import sanitize_error
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)

WORKER_NAME = "contact_dispatcher"

# Deferred rows don't count against the cap; look this far past it for dispatchable ones
SCAN_FACTOR = 4

DISPATCHED = "dispatched"
DEFERRED = "deferred"
SKIPPED = "skipped"
FAILED = "failed"
NOT_DUE = "not_due"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            f"nurture:worker_health:{WORKER_NAME}",
            utcnow().isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_contact_dispatcher():
    """Main loop - dispatch due calls, then due messages."""
    interval = get_settings().dispatch_poll_interval_seconds
    logger.info("Contact dispatcher started (poll every %ds)", interval)

    while True:
        try:
            await dispatch_tick()
        except Exception as e:
            logger.error("Contact dispatcher error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(interval)


async def dispatch_tick(
    now: Optional[datetime] = None,
    gateway: Optional[CommunicationGateway] = None,
    content: Optional[ContentGenerator] = None,
) -> Optional[dict]:
    """
    One dispatcher pass over both channels.
    Returns per-channel outcome counts, or None if another instance holds the tick.
    """
    new_tick_correlation_id("dispatch")
    # Sessions are per-process, so every replica evicts its own
    await call_sessions.evict_older_than(timedelta(seconds=get_settings().call_session_max_age_seconds))

    async with tick_lock(WORKER_NAME) as owned:
        if not owned:
            logger.info("Previous dispatch tick still running, skipping")
            return None

        now = now or utcnow()
        gateway = gateway or get_gateway()
        content = content or get_content_generator()
        settings = get_settings()

        calls = await _dispatch_due_calls(gateway, content, now, settings.dispatch_call_batch_size)
        messages = await _dispatch_due_messages(gateway, content, now, settings.dispatch_message_batch_size)

    if calls.get(DISPATCHED) or messages.get(DISPATCHED) or calls.get(FAILED) or messages.get(FAILED):
        logger.info("Dispatch tick: calls=%s messages=%s", calls, messages)
    return {"calls": calls, "messages": messages}


def _count(stats: dict, outcome: str) -> None:
    stats[outcome] = stats.get(outcome, 0) + 1


async def _due_ids(db: AsyncSession, model, status_col, now: datetime, limit: int, *extra) -> list[uuid.UUID]:
    result = await db.execute(
        select(model.id)
        .where(and_(status_col == "scheduled", model.scheduled_at <= now, *extra))
        .order_by(model.scheduled_at)
        .limit(limit)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

async def _dispatch_due_calls(
    gateway: CommunicationGateway,
    content: ContentGenerator,
    now: datetime,
    batch_size: int,
) -> dict:
    stats: dict = {}
    async with async_session_factory() as db:
        due = await _due_ids(
            db, Call, Call.status, now, batch_size * SCAN_FACTOR,
            or_(Call.call_type != "new_lead", Call.attempt_number < 2),
        )
        for call_id in due:
            if stats.get(DISPATCHED, 0) + stats.get(FAILED, 0) >= batch_size:
                break
            try:
                outcome = await _dispatch_call(db, call_id, gateway, content, now)
                await db.commit()
            except Exception as e:
                await db.rollback()
                outcome = FAILED
                logger.error(
                    "Call %s dispatch error: %s", str(call_id)[:8], sanitize_error(str(e)),
                    exc_info=True, extra={"call_id": str(call_id)},
                )
                await _mark_call_failed(db, call_id, sanitize_error(str(e)), now)
            _count(stats, outcome)
    return stats


async def _mark_call_failed(db: AsyncSession, call_id: uuid.UUID, error: str, now: datetime) -> None:
    try:
        call = await db.get(Call, call_id)
        if call and call.status in ("scheduled", "queued"):
            call.status = "failed"
            call.error_message = error[:500]
            lead = await db.get(Lead, call.lead_id)
            if lead:
                await schedule_next_follow_up(db, lead, now=now)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error("Could not mark call %s failed: %s", str(call_id)[:8], str(e))


async def _dispatch_call(
    db: AsyncSession,
    call_id: uuid.UUID,
    gateway: CommunicationGateway,
    content: ContentGenerator,
    now: datetime,
) -> str:
    call = await db.get(Call, call_id)
    if not call or call.status != "scheduled":
        return NOT_DUE

    lead = await db.get(Lead, call.lead_id)
    if not lead:
        call.status = "canceled"
        call.error_message = "lead not found"
        return SKIPPED
    account = await db.get(Account, call.account_id)
    log_extra = {"lead_id": str(lead.id), "call_id": str(call.id), "channel": "call"}

    try:
        async with lead_lock(str(lead.id)):
            guard = await check_call_dispatch(db, lead, account, call, now)
            if guard.deferred:
                logger.info("Call %s deferred: %s", str(call.id)[:8], guard.reason, extra=log_extra)
                return DEFERRED
            if not guard:
                call.status = "canceled"
                call.error_message = guard.reason
                db.add(EventLog(
                    lead_id=lead.id,
                    account_id=lead.account_id,
                    action="call_skipped",
                    status="skipped",
                    message=guard.reason,
                    data={"call_id": str(call.id), "rule": guard.rule},
                ))
                logger.info("Call %s skipped: %s", str(call.id)[:8], guard.reason, extra=log_extra)
                await schedule_next_follow_up(db, lead, now=now)
                return SKIPPED

            # Claim the row before leaving the process
            call.status = "queued"
            await db.commit()

            try:
                script = await content.render_call_script(lead, call.call_type)
                placement = await asyncio.wait_for(
                    gateway.place_call(lead.phone_number, call.call_type, call.attempt_number, script),
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
                    message=error,
                    data={"call_id": str(call.id), "call_type": call.call_type},
                ))
                logger.error(
                    "Call %s dispatch failed: %s", str(call.id)[:8], error,
                    extra={**log_extra, "error_code": getattr(e, "error_code", None)},
                )
                await update_status_from_communications(db, lead.id, now=now)
                await schedule_next_follow_up(db, lead, now=now)
                return FAILED

            call.provider_call_id = placement.provider_call_id
            call.started_at = now
            lead.last_call_attempt = now
            await call_sessions.open(
                placement.provider_call_id, call.id, lead.id, call.call_type, call.attempt_number,
            )
            db.add(EventLog(
                lead_id=lead.id,
                account_id=lead.account_id,
                action="call_dispatched",
                message=f"{call.call_type} call #{call.attempt_number} placed",
                data={"call_id": str(call.id), "provider_call_id": placement.provider_call_id},
            ))
            logger.info(
                "Call %s dispatched (%s #%d)", str(call.id)[:8], call.call_type, call.attempt_number,
                extra=log_extra,
            )
            await update_status_from_communications(db, lead.id, now=now)
            return DISPATCHED
    except LockTimeoutError:
        logger.info("Lead %s busy, call %s left for next tick", str(lead.id)[:8], str(call.id)[:8], extra=log_extra)
        return DEFERRED


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

async def _dispatch_due_messages(
    gateway: CommunicationGateway,
    content: ContentGenerator,
    now: datetime,
    batch_size: int,
) -> dict:
    stats: dict = {}
    async with async_session_factory() as db:
        due = await _due_ids(
            db, Message, Message.delivery_status, now, batch_size * SCAN_FACTOR,
            Message.direction == "outbound",
        )
        for message_id in due:
            if stats.get(DISPATCHED, 0) + stats.get(FAILED, 0) >= batch_size:
                break
            try:
                outcome = await _dispatch_message(db, message_id, gateway, content, now)
                await db.commit()
            except Exception as e:
                await db.rollback()
                outcome = FAILED
                logger.error(
                    "Message %s dispatch error: %s", str(message_id)[:8], sanitize_error(str(e)),
                    exc_info=True, extra={"message_id": str(message_id)},
                )
                await _mark_message_failed(db, message_id, sanitize_error(str(e)))
            _count(stats, outcome)
    return stats


async def _mark_message_failed(db: AsyncSession, message_id: uuid.UUID, error: str) -> None:
    try:
        message = await db.get(Message, message_id)
        if message and message.delivery_status in ("scheduled", "queued"):
            message.delivery_status = "failed"
            message.error_message = error
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error("Could not mark message %s failed: %s", str(message_id)[:8], str(e))


async def _dispatch_message(
    db: AsyncSession,
    message_id: uuid.UUID,
    gateway: CommunicationGateway,
    content: ContentGenerator,
    now: datetime,
) -> str:
    message = await db.get(Message, message_id)
    if not message or message.delivery_status != "scheduled":
        return NOT_DUE

    lead = await db.get(Lead, message.lead_id)
    if not lead:
        message.delivery_status = "cancelled"
        message.error_message = "lead not found"
        return SKIPPED
    log_extra = {"lead_id": str(lead.id), "message_id": str(message.id), "channel": "message"}

    try:
        async with lead_lock(str(lead.id)):
            guard = check_message_dispatch(lead, message)
            if not guard:
                message.delivery_status = "cancelled"
                message.error_message = guard.reason
                db.add(EventLog(
                    lead_id=lead.id,
                    account_id=lead.account_id,
                    action="message_skipped",
                    status="skipped",
                    message=guard.reason,
                    data={"message_id": str(message.id), "rule": guard.rule, "trigger": message.trigger},
                ))
                logger.info("Message %s skipped: %s", str(message.id)[:8], guard.reason, extra=log_extra)
                return SKIPPED

            # Claim: from here an inbound reply can no longer cancel it
            message.delivery_status = "queued"
            await db.commit()

            outcome = DISPATCHED
            try:
                if not message.content:
                    message.content = await content.render_message(
                        lead, message.trigger, message.call_fallback_type,
                    )
                receipt = await asyncio.wait_for(
                    gateway.send_message(lead.phone_number, message.content),
                    timeout=get_settings().gateway_timeout_seconds,
                )
            except Exception as e:
                error = "gateway timeout" if isinstance(e, asyncio.TimeoutError) else sanitize_error(str(e))
                message.delivery_status = "failed"
                message.error_code = getattr(e, "error_code", None)
                message.error_message = error
                db.add(EventLog(
                    lead_id=lead.id,
                    account_id=lead.account_id,
                    action="message_dispatch_failed",
                    status="failure",
                    message=error,
                    data={"message_id": str(message.id), "trigger": message.trigger},
                ))
                logger.error(
                    "Message %s dispatch failed: %s", str(message.id)[:8], error,
                    extra={**log_extra, "error_code": message.error_code},
                )
                outcome = FAILED
            else:
                message.provider_message_id = receipt.provider_message_id
                message.delivery_status = "sent"
                message.sent_at = now
                lead.last_message_at = now
                db.add(EventLog(
                    lead_id=lead.id,
                    account_id=lead.account_id,
                    action="message_dispatched",
                    message=f"{message.trigger} message sent",
                    data={"message_id": str(message.id), "provider_message_id": receipt.provider_message_id},
                ))
                logger.info("Message %s sent (%s)", str(message.id)[:8], message.trigger, extra=log_extra)

            await db.flush()
            await update_status_from_communications(db, lead.id, now=now)
            await schedule_next_follow_up(db, lead, now=now)
            return outcome
    except LockTimeoutError:
        logger.info(
            "Lead %s busy, message %s left for next tick", str(lead.id)[:8], str(message.id)[:8],
            extra=log_extra,
        )
        return DEFERRED
