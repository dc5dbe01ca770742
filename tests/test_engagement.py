"""
Tests for src/services/engagement.py - external events entering the orchestrator.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from src.models.call import Call
from src.models.event_log import EventLog
from src.models.message import Message
from src.schemas.communication import CallCompletion, DeliveryStatusUpdate
from src.services.call_coordinator import CALL1_PENDING, lead_funnel_state
from src.services.call_sessions import call_sessions
from src.services.contact_scheduler import schedule_next_follow_up
from src.services.engagement import (
    find_lead_by_phone,
    handle_call_status,
    handle_inbound_call,
    handle_inbound_message,
    handle_message_status,
    initiate_manual_call,
    on_lead_created,
)
from src.services.gateway import GatewayError
from src.workers.contact_dispatcher import dispatch_tick

NOW = datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)


async def _scheduled(db, model, lead_id):
    status_col = model.delivery_status if model is Message else model.status
    result = await db.execute(
        select(model).where(model.lead_id == lead_id, status_col == "scheduled")
    )
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Lead created
# ---------------------------------------------------------------------------

class TestOnLeadCreated:
    async def test_starts_call_funnel(self, db, lead):
        result = await on_lead_created(db, lead.id, now=NOW)

        assert result["status"] == "call_scheduled"
        (call,) = await _scheduled(db, Call, lead.id)
        assert str(call.id) == result["contact_id"]
        assert call.call_type == "new_lead"

    async def test_voice_disabled_starts_with_follow_up_text(self, db, make_lead, account):
        lead = await make_lead(account, voice_calling_enabled=False)

        result = await on_lead_created(db, lead.id, now=NOW)

        assert result["status"] == "follow_up_scheduled"
        assert await _scheduled(db, Call, lead.id) == []
        assert len(await _scheduled(db, Message, lead.id)) == 1

    async def test_account_voice_switch(self, db, make_account, make_lead):
        account = await make_account(policy={"voice_calling_enabled": False})
        lead = await make_lead(account)
        result = await on_lead_created(db, lead.id, now=NOW)
        assert result["status"] == "follow_up_scheduled"

    async def test_over_plan_limit_schedules_nothing(self, db, make_account, make_lead):
        account = await make_account(subscription_plan="free")
        for _ in range(10):
            await make_lead(account)
        lead = await make_lead(account)

        result = await on_lead_created(db, lead.id, now=NOW)

        assert result["status"] == "over_limit"
        assert await _scheduled(db, Call, lead.id) == []
        assert await _scheduled(db, Message, lead.id) == []
        event = (await db.execute(
            select(EventLog).where(EventLog.action == "lead_over_plan_limit")
        )).scalars().one()
        assert event.lead_id == lead.id

    async def test_ineligible_lead_is_not_scheduled(self, db, make_lead, account):
        lead = await make_lead(account, ai_enabled=False)
        result = await on_lead_created(db, lead.id, now=NOW)
        assert result["status"] == "not_scheduled"

    async def test_unknown_lead(self, db):
        with pytest.raises(ValueError):
            await on_lead_created(db, uuid.uuid4(), now=NOW)


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------

class TestInboundMessage:
    async def test_reply_cancels_follow_up_and_schedules_auto_reply(self, db, lead):
        await schedule_next_follow_up(db, lead, now=NOW - timedelta(days=1))

        message = await handle_inbound_message(db, lead.phone_number, "Yes, still interested", "SMin1", now=NOW)

        assert message.sender == "lead"
        assert message.delivery_status == "received"
        assert lead.status == "in_conversation"
        (pending,) = await _scheduled(db, Message, lead.id)
        assert pending.trigger == "auto_reply"

    async def test_unknown_number_is_ignored(self, db, lead):
        assert await handle_inbound_message(db, "+15550000000", "hi", now=NOW) is None
        assert (await db.execute(select(Message))).scalars().all() == []

    async def test_sender_number_is_normalized(self, db, make_lead, account):
        lead = await make_lead(account, phone_number="+15125550100")
        message = await handle_inbound_message(db, "(512) 555-0100", "hello", now=NOW)
        assert message.lead_id == lead.id

    async def test_archived_lead_is_not_matched(self, db, make_lead, account):
        lead = await make_lead(account, archived=True)
        assert await find_lead_by_phone(db, lead.phone_number) is None

    async def test_latest_lead_wins_for_shared_number(self, db, make_lead, account):
        await make_lead(account, phone_number="+15125550100", created_at=NOW - timedelta(days=3))
        newer = await make_lead(account, phone_number="+15125550100", created_at=NOW)
        assert (await find_lead_by_phone(db, "+15125550100")).id == newer.id


class TestInboundCall:
    async def test_records_call_and_enters_conversation(self, db, lead):
        call = await handle_inbound_call(db, lead.phone_number, "CAinbound", now=NOW)

        assert call.direction == "inbound"
        assert call.call_type == "inbound"
        assert call.status == "in-progress"
        assert lead.status == "in_conversation"

    async def test_unknown_number_is_ignored(self, db):
        assert await handle_inbound_call(db, "+15550000000", "CAx", now=NOW) is None


# ---------------------------------------------------------------------------
# Status callbacks
# ---------------------------------------------------------------------------

class TestMessageStatus:
    async def _sent(self, db, lead, status="sent") -> Message:
        message = Message(
            lead_id=lead.id, account_id=lead.account_id, sender="agent", direction="outbound",
            delivery_status=status, trigger="follow_up", provider_message_id="SM123", sent_at=NOW,
        )
        db.add(message)
        await db.flush()
        return message

    async def test_delivered(self, db, lead):
        message = await self._sent(db, lead)
        await handle_message_status(db, DeliveryStatusUpdate(provider_message_id="SM123", status="delivered"))
        assert message.delivery_status == "delivered"

    async def test_late_sent_does_not_regress_delivered(self, db, lead):
        message = await self._sent(db, lead, status="delivered")
        await handle_message_status(db, DeliveryStatusUpdate(provider_message_id="SM123", status="sent"))
        assert message.delivery_status == "delivered"

    @pytest.mark.parametrize("late_status", ["queued", "accepted", "sending"])
    async def test_late_progress_does_not_regress_sent(self, db, lead, late_status):
        message = await self._sent(db, lead)
        await handle_message_status(db, DeliveryStatusUpdate(provider_message_id="SM123", status=late_status))
        assert message.delivery_status == "sent"

    async def test_sent_after_sending_is_applied(self, db, lead):
        message = await self._sent(db, lead, status="sending")
        await handle_message_status(db, DeliveryStatusUpdate(provider_message_id="SM123", status="sent"))
        assert message.delivery_status == "sent"

    async def test_failure_records_error(self, db, lead):
        message = await self._sent(db, lead)
        await handle_message_status(db, DeliveryStatusUpdate(
            provider_message_id="SM123", status="undelivered",
            error_code="30003", error_message="Unreachable destination handset",
        ))
        assert message.delivery_status == "undelivered"
        assert message.error_code == "30003"

    async def test_unknown_message(self, db):
        update = DeliveryStatusUpdate(provider_message_id="SMnope", status="delivered")
        assert await handle_message_status(db, update) is None


class TestCallStatus:
    async def _placed(self, db, lead, call_type="new_lead", attempt=1) -> Call:
        call = Call(
            lead_id=lead.id, account_id=lead.account_id, direction="outbound",
            status="queued", call_type=call_type, attempt_number=attempt,
            scheduled_at=NOW, provider_call_id=f"CA{uuid.uuid4().hex}", started_at=NOW,
        )
        db.add(call)
        await db.flush()
        await call_sessions.open(call.provider_call_id, call.id, lead.id, call_type, attempt)
        return call

    async def test_progress_status_only_updates_row(self, db, lead, mock_gateway):
        call = await self._placed(db, lead)

        await handle_call_status(db, CallCompletion(provider_call_id=call.provider_call_id, status="ringing"), mock_gateway)

        assert call.status == "ringing"
        mock_gateway.place_call.assert_not_awaited()
        session = await call_sessions.get(call.provider_call_id)
        assert session.context["status"] == "ringing"

    async def test_missed_call_1_drives_funnel_and_closes_session(self, db, lead, mock_gateway):
        call = await self._placed(db, lead)

        await handle_call_status(
            db, CallCompletion(provider_call_id=call.provider_call_id, status="no-answer"), mock_gateway, now=NOW,
        )

        assert call.status == "no-answer"
        mock_gateway.place_call.assert_awaited_once()
        assert await call_sessions.get(call.provider_call_id) is None

    async def test_answered_call_moves_lead_into_conversation(self, db, lead, mock_gateway):
        call = await self._placed(db, lead)

        await handle_call_status(
            db,
            CallCompletion(provider_call_id=call.provider_call_id, status="completed", duration_seconds=42),
            mock_gateway,
            now=NOW,
        )

        assert call.duration_seconds == 42
        assert lead.status == "in_conversation"

    async def test_progress_after_terminal_is_ignored(self, db, lead, mock_gateway):
        call = await self._placed(db, lead, call_type="follow_up")
        call.status = "completed"
        await db.flush()

        await handle_call_status(db, CallCompletion(provider_call_id=call.provider_call_id, status="in-progress"), mock_gateway)

        assert call.status == "completed"

    async def test_unknown_call(self, db, mock_gateway):
        completion = CallCompletion(provider_call_id="CAnope", status="completed")
        assert await handle_call_status(db, completion, mock_gateway) is None


# ---------------------------------------------------------------------------
# New lead, end to end through the dispatcher and webhooks
# ---------------------------------------------------------------------------

class TestNewLeadCallFunnel:
    async def _call(self, db, attempt: int) -> Call:
        result = await db.execute(
            select(Call).where(Call.call_type == "new_lead", Call.attempt_number == attempt)
        )
        return result.scalar_one()

    async def test_missed_then_answered_sends_no_fallback(self, worker_db, lead, mock_gateway, content):
        await on_lead_created(worker_db, lead.id, now=NOW)
        await worker_db.commit()

        await dispatch_tick(now=NOW, gateway=mock_gateway, content=content)
        first = await self._call(worker_db, 1)
        assert first.provider_call_id is not None

        await handle_call_status(
            worker_db,
            CallCompletion(provider_call_id=first.provider_call_id, status="no-answer"),
            mock_gateway,
            now=NOW + timedelta(minutes=1),
        )
        await worker_db.commit()

        second = await self._call(worker_db, 2)
        assert second.status == "queued"
        assert mock_gateway.place_call.await_count == 2

        await handle_call_status(
            worker_db,
            CallCompletion(provider_call_id=second.provider_call_id, status="completed", duration_seconds=95),
            mock_gateway,
            now=NOW + timedelta(minutes=3),
        )
        await worker_db.commit()

        assert second.status == "completed"
        fallbacks = (await worker_db.execute(
            select(Message).where(Message.trigger == "call_fallback")
        )).scalars().all()
        assert fallbacks == []
        assert mock_gateway.place_call.await_count == 2
        assert lead.status == "in_conversation"

    async def test_missed_twice_sends_one_fallback(self, worker_db, lead, mock_gateway, content):
        await on_lead_created(worker_db, lead.id, now=NOW)
        await worker_db.commit()
        await dispatch_tick(now=NOW, gateway=mock_gateway, content=content)

        first = await self._call(worker_db, 1)
        await handle_call_status(
            worker_db, CallCompletion(provider_call_id=first.provider_call_id, status="busy"), mock_gateway, now=NOW,
        )
        second = await self._call(worker_db, 2)
        await handle_call_status(
            worker_db, CallCompletion(provider_call_id=second.provider_call_id, status="no-answer"), mock_gateway, now=NOW,
        )
        await worker_db.commit()

        (fallback,) = (await worker_db.execute(
            select(Message).where(Message.trigger == "call_fallback")
        )).scalars().all()
        assert fallback.call_fallback_type == "missed_2calls"
        assert fallback.delivery_status == "scheduled"


# ---------------------------------------------------------------------------
# Manual calls
# ---------------------------------------------------------------------------

class TestInitiateManualCall:
    async def test_fresh_lead_gets_new_lead_call(self, db, lead, mock_gateway):
        result = await initiate_manual_call(db, lead.id, mock_gateway, now=NOW)

        assert result.success is True
        assert result.call_type == "new_lead"
        call = await db.get(Call, uuid.UUID(result.call_id))
        assert call.status == "queued"
        assert call.provider_call_id is not None
        assert await lead_funnel_state(db, lead.id) == CALL1_PENDING
        mock_gateway.place_call.assert_awaited_once()

    async def test_conversing_lead_gets_follow_up_call(self, db, make_lead, account, mock_gateway):
        lead = await make_lead(account, status="in_conversation", last_call_attempt=NOW - timedelta(days=3))
        result = await initiate_manual_call(db, lead.id, mock_gateway, now=NOW)
        assert result.success is True
        assert result.call_type == "follow_up"

    async def test_voice_disabled_is_refused(self, db, make_lead, account, mock_gateway):
        lead = await make_lead(account, voice_calling_enabled=False)
        result = await initiate_manual_call(db, lead.id, mock_gateway, now=NOW)
        assert result.success is False
        assert result.rule == "voice_disabled"
        mock_gateway.place_call.assert_not_awaited()

    async def test_outside_calling_hours_is_refused(self, db, lead, mock_gateway):
        late = datetime(2026, 3, 11, 2, 0, tzinfo=timezone.utc)  # 22:00 EDT
        result = await initiate_manual_call(db, lead.id, mock_gateway, now=late)
        assert result.rule == "calling_hours"
        assert "between 11:00 and 19:00" in result.message

    async def test_converted_lead_is_refused(self, db, make_lead, account, mock_gateway):
        lead = await make_lead(account, status="converted")
        result = await initiate_manual_call(db, lead.id, mock_gateway, now=NOW)
        assert result.rule == "ineligible"

    async def test_refused_while_new_lead_calls_in_flight(self, db, lead, mock_gateway):
        await on_lead_created(db, lead.id, now=NOW)
        result = await initiate_manual_call(db, lead.id, mock_gateway, now=NOW)
        assert result.success is False
        assert result.rule == "funnel_in_progress"

    async def test_reactivation_over_quarterly_limit_is_refused(self, db, make_lead, account, mock_gateway):
        lead = await make_lead(account, status="inactive", last_call_attempt=NOW - timedelta(days=10))
        db.add(Call(
            lead_id=lead.id, account_id=lead.account_id, direction="outbound", status="completed",
            call_type="reactivation", attempt_number=1, provider_call_id="CA-earlier",
            created_at=NOW - timedelta(days=10),
        ))
        await db.flush()

        result = await initiate_manual_call(db, lead.id, mock_gateway, now=NOW)

        assert result.success is False
        assert result.rule == "quarterly_limit"
        mock_gateway.place_call.assert_not_awaited()

    async def test_gateway_error_reports_failure(self, db, lead, mock_gateway):
        mock_gateway.place_call.side_effect = GatewayError("Invalid 'To' Phone Number", error_code="21211")

        result = await initiate_manual_call(db, lead.id, mock_gateway, now=NOW)

        assert result.success is False
        assert result.rule == "gateway_error"
        call = await db.get(Call, uuid.UUID(result.call_id))
        assert call.status == "failed"

    async def test_unknown_lead(self, db, mock_gateway):
        with pytest.raises(ValueError):
            await initiate_manual_call(db, uuid.uuid4(), mock_gateway, now=NOW)
