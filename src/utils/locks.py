"""
Redis distributed locks - serialize per-lead evaluation and keep dispatcher ticks non-reentrant.
Uses Redis SET NX with TTL for automatic expiration.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 30
LOCK_WAIT_SECONDS = 5
LOCK_POLL_INTERVAL = 0.1  # 100ms

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


@asynccontextmanager
async def lead_lock(
    lead_id: str,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
):
    """
    Acquire a distributed lock for a lead.
    Prevents a status webhook and a dispatcher tick from re-evaluating
    the same lead at the same time.

    Usage:
        async with lead_lock(lead_id):
            # evaluate lead safely
    """
    lock_key = f"nurture:lock:lead:{lead_id}"
    lock_value = uuid.uuid4().hex

    acquired = False
    try:
        acquired = await _acquire_lock(lock_key, lock_value, ttl, wait)
        if not acquired:
            raise LockTimeoutError(f"Could not acquire lock for lead {str(lead_id)[:8]} within {wait}s")
        yield
    finally:
        if acquired:
            await _release_lock(lock_key, lock_value)


@asynccontextmanager
async def tick_lock(worker: str, ttl: int = 120):
    """
    Non-blocking lock for a worker tick. Yields True if this process owns the
    tick, False if another instance is still running one.
    """
    lock_key = f"nurture:lock:tick:{worker}"
    lock_value = uuid.uuid4().hex

    acquired = await _acquire_lock(lock_key, lock_value, ttl, wait=0)
    try:
        yield acquired
    finally:
        if acquired:
            await _release_lock(lock_key, lock_value)


async def _acquire_lock(
    key: str,
    value: str,
    ttl: int,
    wait: float,
) -> bool:
    """Try to acquire a Redis lock with polling."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()

        was_set = await redis.set(key, value, nx=True, ex=ttl)
        if was_set:
            return True

        elapsed = 0.0
        while elapsed < wait:
            await asyncio.sleep(LOCK_POLL_INTERVAL)
            elapsed += LOCK_POLL_INTERVAL
            was_set = await redis.set(key, value, nx=True, ex=ttl)
            if was_set:
                return True

        logger.warning("Lock acquisition timed out for %s", key)
        return False
    except Exception as e:
        # Redis outage must not stop outreach; the unique index still guards inserts
        logger.warning("Redis lock error for %s: %s. Proceeding without lock.", key, str(e))
        return True


async def _release_lock(key: str, value: str) -> None:
    """Release a Redis lock only if we still own it (compare-and-delete)."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, key, value)
    except Exception as e:
        logger.warning("Redis lock release error for %s: %s", key, str(e))


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass
