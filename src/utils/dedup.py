"""
Webhook deduplication - Redis-based with a 30-minute window.
Twilio retries status callbacks on timeouts; the same (sid, status) pair
must only drive the state machines once.
"""
import hashlib
import logging

logger = logging.getLogger(__name__)

DEDUP_WINDOW_SECONDS = 1800

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from src.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def make_dedup_key(provider: str, sid: str, status: str) -> str:
    """
    Create a deduplication key from provider + resource sid + reported status.
    Uses SHA-256 hash for consistent key length.
    """
    raw = f"{provider}:{sid}:{status}"
    hash_val = hashlib.sha256(raw.encode()).hexdigest()[:16]
    return f"nurture:dedup:{hash_val}"


async def is_duplicate_callback(provider: str, sid: str, status: str) -> bool:
    """
    Check if this status callback was already processed.
    If not, marks it in Redis so a provider retry is recognised.

    Returns True if duplicate, False if new.
    """
    key = make_dedup_key(provider, sid, status)

    try:
        redis = await get_redis()
        was_set = await redis.set(key, "1", nx=True, ex=DEDUP_WINDOW_SECONDS)
        if was_set:
            return False
        logger.info("Duplicate %s callback ignored: sid=%s status=%s", provider, sid, status)
        return True
    except Exception as e:
        # Handlers are idempotent on their own; Redis only saves work
        logger.warning("Redis dedup check failed: %s. Assuming not duplicate.", str(e))
        return False
