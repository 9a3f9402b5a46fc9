"""
Webhook deduplication - Redis-based with a 30-minute window.
The provider delivers at least once; the same messageId may arrive twice.
"""
import hashlib
import logging

logger = logging.getLogger(__name__)

# Dedup window in seconds (30 minutes)
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


def make_dedup_key(event_type: str, message_id: str) -> str:
    """
    Create a deduplication key from webhook type + provider message id.
    Uses SHA-256 hash for consistent key length.
    """
    raw = f"{event_type}:{message_id}"
    hash_val = hashlib.sha256(raw.encode()).hexdigest()[:16]
    return f"visitflow:dedup:{hash_val}"


async def is_duplicate_delivery(event_type: str, message_id: str | None) -> bool:
    """
    Check whether this provider message was already received within the window.
    If not, marks it in Redis so the next delivery is recognised.

    Returns True if duplicate, False if new. Deliveries without a message id
    are never treated as duplicates.
    """
    if not message_id:
        return False

    key = make_dedup_key(event_type, message_id)

    try:
        redis = await get_redis()
        # SET NX = only set if not exists. Returns True if set (new), None if exists (dupe).
        was_set = await redis.set(key, "1", nx=True, ex=DEDUP_WINDOW_SECONDS)
        if was_set:
            return False
        logger.info("Duplicate webhook delivery ignored", extra={"message_id": message_id})
        return True
    except Exception as e:
        # Unique message_id on whatsapp_messages is the second line of defence
        logger.warning("Redis dedup check failed: %s. Proceeding.", str(e))
        return False
