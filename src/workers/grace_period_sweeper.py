"""
Grace period sweeper - archives excess leads once a downgrade grace period expires.
Runs hourly. Each account is archived in its own transaction.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from src.config import get_settings
from src.database import async_session_factory
from src.services.plan_limits import process_expired_grace_periods
from src.utils.logging import new_tick_correlation_id
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)

WORKER_NAME = "grace_period_sweeper"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            f"nurture:worker_health:{WORKER_NAME}",
            utcnow().isoformat(),
            ex=2 * get_settings().grace_sweep_interval_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_grace_period_sweeper():
    """Main sweeper loop."""
    interval = get_settings().grace_sweep_interval_seconds
    logger.info("Grace period sweeper started (every %ds)", interval)

    while True:
        try:
            await sweep_tick()
        except Exception as e:
            logger.error("Grace period sweeper error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(interval)


async def sweep_tick(now: Optional[datetime] = None) -> dict:
    """One pass over accounts with expired grace periods."""
    new_tick_correlation_id("grace")
    async with async_session_factory() as db:
        return await process_expired_grace_periods(db, now=now or utcnow())
