"""
Tests for src/services/call_coordinator.py - the new-lead call funnel.

Covers:
- Call #1 scheduling
- Call #1 outcomes: answered, voicemail, no answer
- Call #2 outcomes and the fallback text
- duplicate completion webhooks
- follow-up / reactivation retries
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from src.models.call import Call
from src.models.event_log import EventLog
from src.models.message import Message
from src.services.call_coordinator import (
    CALL1_PENDING,
    CALL1_RESOLVED,
    CALL2_PENDING,
    CALL2_RESOLVED,
    FALLBACK_MISSED,
    FALLBACK_SENT,
    FALLBACK_VOICEMAIL,
    funnel_state,
    handle_call_completion,
    lead_funnel_state,
    make_immediate_call,
    schedule_fallback_text,
    schedule_new_lead_calls,
)
from src.services.call_sessions import call_sessions
from src.services.contact_scheduler import schedule_auto_reply, schedule_next_follow_up
from src.services.gateway import GatewayError

NOW = datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)


async def _calls(db, lead_id):
    result = await db.execute(
        select(Call).where(Call.lead_id == lead_id).order_by(Call.attempt_number)
    )
    return result.scalars().all()


async def _fallbacks(db, lead_id):
    result = await db.execute(
        select(Message).where(Message.lead_id == lead_id, Message.trigger == "call_fallback")
    )
    return result.scalars().all()


async def _placed_call_1(db, lead) -> Call:
    """Call #1 as the dispatcher leaves it: placed and awaiting its webhook."""
    call = Call(
        lead_id=lead.id,
        account_id=lead.account_id,
        direction="outbound",
        status="queued",
        call_type="new_lead",
        attempt_number=1,
        scheduled_at=NOW,
        provider_call_id=f"CA{uuid.uuid4().hex}",
        started_at=NOW,
    )
    db.add(call)
    await db.flush()
    return call


class TestScheduleNewLeadCalls:
    async def test_schedules_call_1_now(self, db, lead):
        call_id = await schedule_new_lead_calls(db, lead, now=NOW)

        calls = await _calls(db, lead.id)
        assert [c.id for c in calls] == [call_id]
        assert calls[0].status == "scheduled"
        assert calls[0].attempt_number == 1
        assert calls[0].call_type == "new_lead"

    async def test_call_2_is_never_pre_scheduled(self, db, lead):
        await schedule_new_lead_calls(db, lead, now=NOW)
        assert await schedule_new_lead_calls(db, lead, now=NOW) is None
        assert len(await _calls(db, lead.id)) == 1

    async def test_voice_disabled_lead_gets_no_call(self, db, make_lead, account):
        lead = await make_lead(account, voice_calling_enabled=False)
        assert await schedule_new_lead_calls(db, lead, now=NOW) is None


class TestCall1Outcomes:
    async def test_answered_ends_funnel(self, db, lead, mock_gateway):
        call = await _placed_call_1(db, lead)

        await handle_call_completion(db, call.id, "completed", False, 95, mock_gateway, now=NOW)

        assert call.status == "completed"
        assert call.duration_seconds == 95
        mock_gateway.place_call.assert_not_awaited()
        assert await _fallbacks(db, lead.id) == []
        assert funnel_state(await _calls(db, lead.id)) == CALL1_RESOLVED

    async def test_voicemail_skips_call_2_and_texts(self, db, lead, mock_gateway):
        call = await _placed_call_1(db, lead)

        await handle_call_completion(db, call.id, "completed", True, 20, mock_gateway, now=NOW)

        mock_gateway.place_call.assert_not_awaited()
        fallbacks = await _fallbacks(db, lead.id)
        assert len(fallbacks) == 1
        assert fallbacks[0].call_fallback_type == FALLBACK_VOICEMAIL
        assert fallbacks[0].delivery_status == "scheduled"

    @pytest.mark.parametrize("status", ["no-answer", "busy", "failed"])
    async def test_missed_places_call_2_immediately(self, db, lead, mock_gateway, status):
        call = await _placed_call_1(db, lead)

        await handle_call_completion(db, call.id, status, False, None, mock_gateway, now=NOW)

        mock_gateway.place_call.assert_awaited_once()
        args = mock_gateway.place_call.call_args.args
        assert args[0] == lead.phone_number
        assert args[1:3] == ("new_lead", 2)
        calls = await _calls(db, lead.id)
        assert [c.attempt_number for c in calls] == [1, 2]
        assert calls[1].status == "queued"
        assert calls[1].provider_call_id is not None
        assert await call_sessions.get(calls[1].provider_call_id) is not None
        assert await _fallbacks(db, lead.id) == []
        assert funnel_state(calls) == CALL2_PENDING

    async def test_duplicate_completion_is_ignored(self, db, lead, mock_gateway):
        call = await _placed_call_1(db, lead)

        await handle_call_completion(db, call.id, "no-answer", False, None, mock_gateway, now=NOW)
        await handle_call_completion(db, call.id, "no-answer", False, None, mock_gateway, now=NOW)

        assert mock_gateway.place_call.await_count == 1
        assert len(await _calls(db, lead.id)) == 2


class TestCall2Outcomes:
    async def _call_2(self, db, lead, mock_gateway) -> Call:
        call_1 = await _placed_call_1(db, lead)
        await handle_call_completion(db, call_1.id, "no-answer", False, None, mock_gateway, now=NOW)
        return (await _calls(db, lead.id))[1]

    async def test_missed_twice_texts_missed_fallback(self, db, lead, mock_gateway):
        call_2 = await self._call_2(db, lead, mock_gateway)

        await handle_call_completion(db, call_2.id, "no-answer", False, None, mock_gateway, now=NOW)

        fallbacks = await _fallbacks(db, lead.id)
        assert [f.call_fallback_type for f in fallbacks] == [FALLBACK_MISSED]
        assert mock_gateway.place_call.await_count == 1
        calls = await _calls(db, lead.id)
        assert funnel_state(calls, fallbacks) == FALLBACK_SENT

    async def test_voicemail_on_call_2_texts_voicemail_fallback(self, db, lead, mock_gateway):
        call_2 = await self._call_2(db, lead, mock_gateway)

        await handle_call_completion(db, call_2.id, "completed", True, 15, mock_gateway, now=NOW)

        fallbacks = await _fallbacks(db, lead.id)
        assert [f.call_fallback_type for f in fallbacks] == [FALLBACK_VOICEMAIL]

    async def test_answered_call_2_sends_nothing(self, db, lead, mock_gateway):
        call_2 = await self._call_2(db, lead, mock_gateway)

        await handle_call_completion(db, call_2.id, "completed", False, 60, mock_gateway, now=NOW)

        assert await _fallbacks(db, lead.id) == []
        assert funnel_state(await _calls(db, lead.id)) == CALL2_RESOLVED

    async def test_never_a_third_call(self, db, lead, mock_gateway):
        call_2 = await self._call_2(db, lead, mock_gateway)

        await handle_call_completion(db, call_2.id, "busy", False, None, mock_gateway, now=NOW)

        calls = await _calls(db, lead.id)
        assert len(calls) == 2
        assert max(c.attempt_number for c in calls) == 2


class TestMakeImmediateCall:
    async def test_gateway_error_marks_call_failed_and_closes_funnel(self, db, lead, mock_gateway):
        mock_gateway.place_call.side_effect = GatewayError("carrier rejected", error_code="21215")

        call = await make_immediate_call(db, lead, 2, mock_gateway, now=NOW)

        assert call.status == "failed"
        assert "carrier rejected" in call.error_message
        fallbacks = await _fallbacks(db, lead.id)
        assert [f.call_fallback_type for f in fallbacks] == [FALLBACK_MISSED]
        await db.flush()
        events = (await db.execute(
            select(EventLog).where(EventLog.action == "call_dispatch_failed")
        )).scalars().all()
        assert len(events) == 1

    async def test_timeout_is_a_failure(self, db, lead, mock_gateway):
        mock_gateway.place_call.side_effect = asyncio.TimeoutError()

        call = await make_immediate_call(db, lead, 2, mock_gateway, now=NOW)

        assert call.status == "failed"
        assert call.error_message == "gateway timeout"

    async def test_success_records_attempt_on_lead(self, db, lead, mock_gateway):
        call = await make_immediate_call(db, lead, 2, mock_gateway, now=NOW)

        assert call.provider_call_id.startswith("CA")
        assert lead.last_call_attempt == NOW

    async def test_existing_attempt_is_not_placed_again(self, db, lead, mock_gateway):
        await make_immediate_call(db, lead, 2, mock_gateway, now=NOW)
        assert await make_immediate_call(db, lead, 2, mock_gateway, now=NOW) is None
        assert mock_gateway.place_call.await_count == 1


class TestFallbackText:
    async def test_supersedes_pending_follow_up(self, db, lead):
        await schedule_next_follow_up(db, lead, now=NOW)

        message_id = await schedule_fallback_text(db, lead, detected_voicemail=False, now=NOW)

        pending = (await db.execute(
            select(Message).where(Message.delivery_status == "scheduled")
        )).scalars().all()
        assert [m.id for m in pending] == [message_id]

    async def test_pending_auto_reply_suppresses_fallback(self, db, lead, caplog):
        await schedule_auto_reply(db, lead, now=NOW)

        with caplog.at_level(logging.WARNING, logger="src.services.call_coordinator"):
            assert await schedule_fallback_text(db, lead, detected_voicemail=False, now=NOW) is None

        (pending,) = (await db.execute(
            select(Message).where(Message.delivery_status == "scheduled")
        )).scalars().all()
        assert pending.trigger == "auto_reply"
        assert "suppressed" in caplog.text
        event = (await db.execute(
            select(EventLog).where(EventLog.action == "fallback_text_suppressed")
        )).scalars().one()
        assert event.data["call_fallback_type"] == FALLBACK_MISSED

    async def test_at_most_one_fallback_per_lead(self, db, lead):
        assert await schedule_fallback_text(db, lead, detected_voicemail=True, now=NOW) is not None
        assert await schedule_fallback_text(db, lead, detected_voicemail=False, now=NOW) is None
        assert len(await _fallbacks(db, lead.id)) == 1


class TestRetries:
    async def _follow_up_call(self, db, lead, call_type="follow_up", attempt=1) -> Call:
        call = Call(
            lead_id=lead.id, account_id=lead.account_id, direction="outbound",
            status="queued", call_type=call_type, attempt_number=attempt,
            scheduled_at=NOW, provider_call_id=f"CA{uuid.uuid4().hex}",
        )
        db.add(call)
        await db.flush()
        return call

    async def test_failed_follow_up_call_is_retried_later(self, db, lead, mock_gateway):
        call = await self._follow_up_call(db, lead)

        await handle_call_completion(db, call.id, "no-answer", False, None, mock_gateway, now=NOW)

        retry = (await db.execute(
            select(Call).where(Call.status == "scheduled")
        )).scalars().one()
        assert retry.attempt_number == 2
        assert retry.call_type == "follow_up"
        mock_gateway.place_call.assert_not_awaited()

    async def test_retries_stop_at_policy_limit(self, db, lead, mock_gateway):
        call = await self._follow_up_call(db, lead, attempt=2)

        await handle_call_completion(db, call.id, "busy", False, None, mock_gateway, now=NOW)

        scheduled = (await db.execute(
            select(Call).where(Call.status == "scheduled")
        )).scalars().all()
        assert scheduled == []

    async def test_completed_follow_up_call_is_not_retried(self, db, lead, mock_gateway):
        call = await self._follow_up_call(db, lead, call_type="reactivation")

        await handle_call_completion(db, call.id, "completed", False, 30, mock_gateway, now=NOW)

        assert len(await _calls(db, lead.id)) == 1


class TestFunnelState:
    async def test_no_funnel(self):
        assert funnel_state([]) is None

    async def test_call_1_pending(self, db, lead):
        await schedule_new_lead_calls(db, lead, now=NOW)
        assert funnel_state(await _calls(db, lead.id)) == CALL1_PENDING

    async def test_lead_funnel_state_follows_the_rows(self, db, lead, mock_gateway):
        assert await lead_funnel_state(db, lead.id) is None

        call = await _placed_call_1(db, lead)
        await handle_call_completion(db, call.id, "no-answer", False, None, mock_gateway, now=NOW)
        assert await lead_funnel_state(db, lead.id) == CALL2_PENDING

        call_2 = (await _calls(db, lead.id))[1]
        await handle_call_completion(db, call_2.id, "busy", False, None, mock_gateway, now=NOW)
        assert await lead_funnel_state(db, lead.id) == FALLBACK_SENT
