"""
Lead state machine - derives contact-worthiness from the communication history.

Statuses: new -> in_conversation -> {converted | inactive}. qualified and
appointment_set are manual sub-states of the conversation track. converted is
terminal and is never reached by inference.

The evaluation is a pure walk over one chronological timeline of messages and
calls. Re-running it on an unchanged timeline changes nothing.
"""
import logging
import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.call import Call
from src.models.event_log import EventLog
from src.models.lead import Lead
from src.models.message import Message
from src.schemas.communication import (
    CallEvent,
    MessageEvent,
    TimelineEntry,
    UNPLACED_CALL_STATUSES,
    UNSENT_MESSAGE_STATUSES,
    to_timeline_entry,
)
from src.services.contact_scheduler import (
    cancel_pending_contacts,
    cancel_scheduled_messages,
    schedule_follow_up_calls,
    schedule_next_follow_up,
)
from src.utils.timezone import ensure_utc, utcnow

logger = logging.getLogger(__name__)

LEAD_STATUSES = ("new", "in_conversation", "qualified", "appointment_set", "converted", "inactive")
MANUAL_STATUSES = frozenset({"qualified", "appointment_set", "converted"})
CONVERSATION_SUB_STATES = frozenset({"qualified", "appointment_set"})

# Consecutive unanswered or failed agent contacts before a lead goes inactive
INACTIVITY_THRESHOLD = 10

APPOINTMENT_STATUS_MAP = {
    "scheduled": "appointment_set",
    "completed": "converted",
}


def _message_event(message: Message) -> Optional[MessageEvent]:
    if message.delivery_status in UNSENT_MESSAGE_STATUSES:
        return None
    return MessageEvent(
        timestamp=ensure_utc(message.timeline_at),
        sender=message.sender,
        delivery_status=message.delivery_status,
    )


def _call_event(call: Call) -> Optional[CallEvent]:
    if call.status in UNPLACED_CALL_STATUSES:
        return None
    # Withdrawn by a guard or lifecycle change before it was ever placed
    if call.status == "canceled" and not call.provider_call_id:
        return None
    answered = call.status == "completed" and not call.is_voicemail
    sender = "lead" if call.direction == "inbound" or answered else "agent"
    return CallEvent(
        timestamp=ensure_utc(call.timeline_at),
        sender=sender,
        status=call.status,
    )


def build_timeline(
    messages: Iterable[Message],
    calls: Iterable[Call],
) -> list[TimelineEntry]:
    """Merge messages and calls into one chronological list of timeline entries."""
    events = [e for e in (_message_event(m) for m in messages) if e is not None]
    events += [e for e in (_call_event(c) for c in calls) if e is not None]
    events.sort(key=lambda e: e.timestamp)
    return [to_timeline_entry(e) for e in events]


def _count_trailing(timeline: list[TimelineEntry]) -> tuple[bool, int, int]:
    """Returns (has_response, consecutive_no_response, consecutive_failures)."""
    last_response = None
    for idx, entry in enumerate(timeline):
        if entry.sender == "lead":
            last_response = idx

    has_response = last_response is not None
    after = timeline[last_response + 1:] if has_response else timeline
    consecutive_no_response = sum(1 for e in after if e.sender == "agent")

    consecutive_failures = 0
    for entry in reversed(timeline):
        if entry.sender != "agent" or not entry.failed:
            break
        consecutive_failures += 1

    return has_response, consecutive_no_response, consecutive_failures


def evaluate_status(current: str, timeline: list[TimelineEntry]) -> str:
    """
    Pure status evaluation.

    1. converted never changes.
    2. 10+ agent contacts since the last lead response, or a trailing run of
       10+ failed agent contacts, makes the lead inactive.
    3. A lead that never responded is new.
    4. Otherwise the lead is in conversation, keeping a manual sub-state.
    """
    if current == "converted":
        return "converted"

    has_response, no_response, failures = _count_trailing(timeline)

    if no_response >= INACTIVITY_THRESHOLD or failures >= INACTIVITY_THRESHOLD:
        return "inactive"
    if not has_response:
        return "new"
    if current in CONVERSATION_SUB_STATES:
        return current
    return "in_conversation"


async def _load_history(db: AsyncSession, lead_id: uuid.UUID) -> tuple[list[Message], list[Call]]:
    messages = (await db.execute(
        select(Message).where(Message.lead_id == lead_id)
    )).scalars().all()
    calls = (await db.execute(
        select(Call).where(Call.lead_id == lead_id)
    )).scalars().all()
    return list(messages), list(calls)


async def _reschedule(db: AsyncSession, lead: Lead, now: datetime) -> None:
    """Replace a follow-up computed for the previous status with one for the current status."""
    await cancel_scheduled_messages(db, lead.id, triggers=("follow_up",))
    await schedule_next_follow_up(db, lead, now=now)
    if lead.status == "inactive":
        await schedule_follow_up_calls(db, lead, now=now)


async def update_status_from_communications(
    db: AsyncSession,
    lead_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Optional[Lead]:
    """
    Re-evaluate a lead's status from its full communication history.
    Persists and reschedules only when the status actually changes.
    """
    now = now or utcnow()
    lead = await db.get(Lead, lead_id)
    if not lead:
        logger.warning("Status update for unknown lead %s", str(lead_id)[:8])
        return None

    if lead.status == "converted":
        logger.info(
            "Lead %s is converted; automatic status evaluation refused", str(lead.id)[:8],
            extra={"lead_id": str(lead.id)},
        )
        return lead

    messages, calls = await _load_history(db, lead.id)
    timeline = build_timeline(messages, calls)
    new_status = evaluate_status(lead.status, timeline)

    if new_status == lead.status:
        return lead

    old_status = lead.status
    lead.status = new_status
    db.add(EventLog(
        lead_id=lead.id,
        account_id=lead.account_id,
        action="status_changed",
        message=f"{old_status} -> {new_status}",
        data={"from": old_status, "to": new_status, "timeline_length": len(timeline), "source": "communications"},
    ))
    logger.info(
        "Lead %s status: %s -> %s", str(lead.id)[:8], old_status, new_status,
        extra={"lead_id": str(lead.id)},
    )

    await db.flush()
    await _reschedule(db, lead, now)
    return lead


async def set_manual_status(
    db: AsyncSession,
    lead_id: uuid.UUID,
    status: str,
    now: Optional[datetime] = None,
) -> Lead:
    """
    Apply a manual transition (qualified, appointment_set, converted).
    Raises ValueError for statuses that may only be inferred or for unknown leads.
    """
    if status not in MANUAL_STATUSES:
        raise ValueError(f"Status {status!r} cannot be set manually")

    now = now or utcnow()
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise ValueError(f"Lead {lead_id} not found")

    if lead.status == status:
        return lead
    if lead.status == "converted":
        logger.warning(
            "Refusing to move converted lead %s to %s", str(lead.id)[:8], status,
            extra={"lead_id": str(lead.id)},
        )
        return lead

    old_status = lead.status
    lead.status = status
    db.add(EventLog(
        lead_id=lead.id,
        account_id=lead.account_id,
        action="status_changed",
        message=f"{old_status} -> {status}",
        data={"from": old_status, "to": status, "source": "manual"},
    ))
    logger.info(
        "Lead %s manually set: %s -> %s", str(lead.id)[:8], old_status, status,
        extra={"lead_id": str(lead.id)},
    )

    await db.flush()
    if status == "converted":
        messages, calls = await cancel_pending_contacts(db, lead.id)
        logger.info(
            "Withdrew %d message(s) and %d call(s) for converted lead %s",
            messages, calls, str(lead.id)[:8],
            extra={"lead_id": str(lead.id)},
        )
    else:
        await _reschedule(db, lead, now)
    return lead


async def update_status_for_appointment(
    db: AsyncSession,
    lead_id: uuid.UUID,
    appointment_status: str,
    now: Optional[datetime] = None,
) -> Optional[Lead]:
    """Map an appointment lifecycle event onto the lead (scheduled -> appointment_set, completed -> converted)."""
    status = APPOINTMENT_STATUS_MAP.get(appointment_status)
    if status is None:
        logger.info("Appointment status %r does not affect lead status", appointment_status)
        return None
    return await set_manual_status(db, lead_id, status, now=now)
