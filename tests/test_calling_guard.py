"""
Tests for src/services/calling_guard.py - calling hours, quarterly quota and spacing.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from src.models.call import Call
from src.schemas.account_policy import AccountCommunicationPolicy
from src.services.calling_guard import (
    DEFER,
    SKIP,
    GuardResult,
    can_make_call_attempt,
    check_call_dispatch,
    check_message_dispatch,
    determine_call_type,
    has_exceeded_quarterly_limit,
    is_within_calling_hours,
)
from src.utils.timezone import quarter_start, get_zoneinfo

# Tuesday 2026-03-10 12:00 America/New_York (EDT, UTC-4)
NOW = datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)


def _scheduled_call(lead, call_type="follow_up", attempt=1) -> Call:
    return Call(
        id=uuid.uuid4(),
        lead_id=lead.id,
        account_id=lead.account_id,
        direction="outbound",
        status="scheduled",
        call_type=call_type,
        attempt_number=attempt,
        scheduled_at=NOW,
    )


async def _placed_call(db, lead, created_at, status="completed", provider_call_id="CA1") -> Call:
    call = Call(
        lead_id=lead.id,
        account_id=lead.account_id,
        direction="outbound",
        status=status,
        call_type="reactivation",
        attempt_number=1,
        provider_call_id=provider_call_id,
        created_at=created_at,
    )
    db.add(call)
    await db.flush()
    return call


class TestCallingHours:
    def _policy(self, **hours) -> AccountCommunicationPolicy:
        return AccountCommunicationPolicy(calling_hours=hours)

    def test_inside_window(self):
        assert is_within_calling_hours(self._policy(), "America/New_York", NOW) is True

    def test_start_hour_is_inclusive(self):
        at_eleven = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)  # 11:00 EDT
        assert is_within_calling_hours(self._policy(), "America/New_York", at_eleven) is True

    def test_end_hour_is_exclusive(self):
        at_seven_pm = datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc)  # 19:00 EDT
        assert is_within_calling_hours(self._policy(), "America/New_York", at_seven_pm) is False

    def test_uses_account_local_time(self):
        # 12:00 in New York is 09:00 in Los Angeles
        assert is_within_calling_hours(self._policy(), "America/Los_Angeles", NOW) is False

    def test_disallowed_weekday(self):
        policy = self._policy(days=["monday", "wednesday"])
        assert is_within_calling_hours(policy, "America/New_York", NOW) is False

    def test_unknown_timezone_falls_back_to_eastern(self):
        assert is_within_calling_hours(self._policy(), "Mars/Olympus", NOW) is True


class TestSpacing:
    async def test_never_called(self, lead):
        assert can_make_call_attempt(lead, 24, NOW) is True

    async def test_too_soon(self, lead):
        lead.last_call_attempt = NOW - timedelta(hours=1)
        assert can_make_call_attempt(lead, 2, NOW) is False

    async def test_exactly_min_hours_is_allowed(self, lead):
        lead.last_call_attempt = NOW - timedelta(hours=2)
        assert can_make_call_attempt(lead, 2, NOW) is True

    async def test_naive_timestamp_is_treated_as_utc(self, lead):
        lead.last_call_attempt = (NOW - timedelta(hours=3)).replace(tzinfo=None)
        assert can_make_call_attempt(lead, 2, NOW) is True


class TestDetermineCallType:
    async def test_types(self, lead):
        assert determine_call_type(lead) == "new_lead"
        lead.last_call_attempt = NOW
        assert determine_call_type(lead) == "follow_up"
        lead.status = "inactive"
        assert determine_call_type(lead) == "reactivation"


class TestQuarterlyLimit:
    async def test_one_call_this_quarter_hits_default_limit(self, db, lead):
        await _placed_call(db, lead, created_at=NOW - timedelta(days=5))
        policy = AccountCommunicationPolicy()
        assert await has_exceeded_quarterly_limit(db, lead.id, policy, "America/New_York", NOW) is True

    async def test_calls_last_quarter_do_not_count(self, db, lead):
        tz = get_zoneinfo("America/New_York")
        await _placed_call(db, lead, created_at=quarter_start(NOW, tz) - timedelta(hours=1))
        policy = AccountCommunicationPolicy()
        assert await has_exceeded_quarterly_limit(db, lead.id, policy, "America/New_York", NOW) is False

    async def test_withdrawn_calls_do_not_count(self, db, lead):
        await _placed_call(db, lead, created_at=NOW - timedelta(days=1), status="canceled", provider_call_id=None)
        policy = AccountCommunicationPolicy()
        assert await has_exceeded_quarterly_limit(db, lead.id, policy, "America/New_York", NOW) is False

    async def test_evaluated_call_is_excluded(self, db, lead):
        call = await _placed_call(db, lead, created_at=NOW - timedelta(days=1), status="queued")
        policy = AccountCommunicationPolicy()
        assert await has_exceeded_quarterly_limit(
            db, lead.id, policy, "America/New_York", NOW, exclude_call_id=call.id,
        ) is False

    async def test_higher_limit(self, db, lead):
        await _placed_call(db, lead, created_at=NOW - timedelta(days=5))
        policy = AccountCommunicationPolicy(quarterly_call_limit=2)
        assert await has_exceeded_quarterly_limit(db, lead.id, policy, "America/New_York", NOW) is False


class TestCheckCallDispatch:
    async def test_allowed(self, db, account, lead):
        result = await check_call_dispatch(db, lead, account, _scheduled_call(lead), NOW)
        assert result
        assert result.action is None

    async def test_outside_hours_defers(self, db, account, lead):
        late = datetime(2026, 3, 11, 2, 0, tzinfo=timezone.utc)  # 22:00 EDT
        result = await check_call_dispatch(db, lead, account, _scheduled_call(lead), late)
        assert not result
        assert result.action == DEFER
        assert result.deferred
        assert result.rule == "calling_hours"

    async def test_reactivation_over_quota_defers(self, db, account, make_lead):
        lead = await make_lead(account, status="inactive")
        await _placed_call(db, lead, created_at=NOW - timedelta(days=10))
        result = await check_call_dispatch(db, lead, account, _scheduled_call(lead, "reactivation"), NOW)
        assert result.action == DEFER
        assert result.rule == "quarterly_limit"

    async def test_quota_only_applies_to_reactivation(self, db, account, lead):
        await _placed_call(db, lead, created_at=NOW - timedelta(days=10))
        result = await check_call_dispatch(db, lead, account, _scheduled_call(lead, "follow_up"), NOW)
        assert result

    async def test_follow_up_spacing_defers(self, db, account, make_lead):
        lead = await make_lead(account, last_call_attempt=NOW - timedelta(hours=1))
        result = await check_call_dispatch(db, lead, account, _scheduled_call(lead), NOW)
        assert result.action == DEFER
        assert result.rule == "call_spacing"

    async def test_reactivation_uses_daily_spacing(self, db, make_account, make_lead):
        account = await make_account(policy={"quarterly_call_limit": 5})
        lead = await make_lead(account, status="inactive", last_call_attempt=NOW - timedelta(hours=5))
        result = await check_call_dispatch(db, lead, account, _scheduled_call(lead, "reactivation"), NOW)
        assert result.rule == "call_spacing"

    @pytest.mark.parametrize("overrides,rule", [
        ({"archived": True}, "archived"),
        ({"ai_enabled": False}, "ai_disabled"),
        ({"phone_number": None}, "no_phone"),
        ({"status": "converted"}, "converted"),
        ({"voice_calling_enabled": False}, "voice_disabled"),
    ])
    async def test_lead_gates_skip(self, db, account, make_lead, overrides, rule):
        lead = await make_lead(account, **overrides)
        result = await check_call_dispatch(db, lead, account, _scheduled_call(lead), NOW)
        assert result.action == SKIP
        assert result.rule == rule

    async def test_account_voice_switch_skips(self, db, make_account, make_lead):
        account = await make_account(policy={"voice_calling_enabled": False})
        lead = await make_lead(account)
        result = await check_call_dispatch(db, lead, account, _scheduled_call(lead), NOW)
        assert result.rule == "voice_disabled"

    async def test_missing_account_uses_default_policy(self, db, lead):
        result = await check_call_dispatch(db, lead, None, _scheduled_call(lead), NOW)
        assert result


class TestCheckMessageDispatch:
    async def test_allowed(self, lead):
        assert check_message_dispatch(lead)

    async def test_converted_lead_still_gets_fallback(self, make_lead, account):
        lead = await make_lead(account, status="converted")
        fallback = type("M", (), {"trigger": "call_fallback"})()
        follow_up = type("M", (), {"trigger": "follow_up"})()
        assert check_message_dispatch(lead, fallback)
        assert not check_message_dispatch(lead, follow_up)

    async def test_archived_skips(self, make_lead, account):
        lead = await make_lead(account, archived=True)
        result = check_message_dispatch(lead)
        assert result.action == SKIP


class TestGuardResult:
    def test_bool_and_repr(self):
        assert GuardResult.allow()
        deferred = GuardResult.defer("later", "calling_hours")
        assert not deferred
        assert "DEFER" in repr(deferred)
