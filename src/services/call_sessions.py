"""
Call session registry - short-lived state for calls in flight, keyed by provider call id.
Opened when a call is placed, closed when its terminal status callback arrives.
Sessions whose callback never shows up (lost, or delivered to another replica)
are evicted by age from the dispatcher tick.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)


class CallSession(BaseModel):
    provider_call_id: str
    call_id: uuid.UUID
    lead_id: uuid.UUID
    call_type: str
    attempt_number: int
    opened_at: datetime = Field(default_factory=utcnow)
    context: dict[str, Any] = Field(default_factory=dict)


class CallSessionRegistry:
    """In-process registry with an explicit open / close lifecycle."""

    def __init__(self):
        self._sessions: dict[str, CallSession] = {}
        self._lock = asyncio.Lock()

    async def open(
        self,
        provider_call_id: str,
        call_id: uuid.UUID,
        lead_id: uuid.UUID,
        call_type: str,
        attempt_number: int,
        **context,
    ) -> CallSession:
        session = CallSession(
            provider_call_id=provider_call_id,
            call_id=call_id,
            lead_id=lead_id,
            call_type=call_type,
            attempt_number=attempt_number,
            context=dict(context),
        )
        async with self._lock:
            if provider_call_id in self._sessions:
                logger.warning("Call session %s re-opened", provider_call_id)
            self._sessions[provider_call_id] = session
        return session

    async def get(self, provider_call_id: str) -> Optional[CallSession]:
        async with self._lock:
            return self._sessions.get(provider_call_id)

    async def update(self, provider_call_id: str, **context) -> Optional[CallSession]:
        async with self._lock:
            session = self._sessions.get(provider_call_id)
            if session is not None:
                session.context.update(context)
            return session

    async def close(self, provider_call_id: str) -> Optional[CallSession]:
        """Evict a session. Returns it, or None if it was never opened here."""
        async with self._lock:
            session = self._sessions.pop(provider_call_id, None)
        if session is not None:
            logger.debug(
                "Call session closed after %.1fs",
                (utcnow() - session.opened_at).total_seconds(),
                extra={"call_id": str(session.call_id), "lead_id": str(session.lead_id)},
            )
        return session

    async def evict_older_than(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """Drop sessions opened more than max_age ago. Returns how many were evicted."""
        cutoff = (now or utcnow()) - max_age
        async with self._lock:
            stale = [key for key, s in self._sessions.items() if s.opened_at < cutoff]
            for key in stale:
                del self._sessions[key]
        if stale:
            logger.warning("Evicted %d stale call session(s) older than %s", len(stale), max_age)
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


call_sessions = CallSessionRegistry()
