"""
Follow-up interval policy - how many days to wait before the next contact, per lead status.
Pure lookup against the typed FollowUpIntervals struct. No side effects beyond a warning log.
"""
import logging

from src.schemas.account_policy import AccountCommunicationPolicy, FollowUpIntervals

logger = logging.getLogger(__name__)

_INTERVAL_BY_STATUS = {
    "new": lambda i: i.new,
    "in_conversation": lambda i: i.in_conversation,
    "qualified": lambda i: i.qualified,
    "appointment_set": lambda i: i.appointment_set,
    "inactive": lambda i: i.inactive,
}


def follow_up_interval_days(status: str, policy: AccountCommunicationPolicy) -> int:
    """
    Days until the next follow-up for a lead in `status`.
    Unknown statuses (including converted, which the scheduler never asks about)
    fall back to the in_conversation interval.
    """
    intervals: FollowUpIntervals = policy.follow_up_intervals
    getter = _INTERVAL_BY_STATUS.get(status)
    if getter is None:
        logger.warning(
            "No follow-up interval for status %r, using in_conversation (%d days)",
            status, intervals.in_conversation,
        )
        return intervals.in_conversation
    return getter(intervals)
