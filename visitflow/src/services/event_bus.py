"""
Realtime event bus via Redis pub/sub - pushes WhatsApp changes to the console.

Publishers call publish_event() after committing; the staff API bridges the
channel to Server-Sent Events. Delivery is best-effort: consoles also poll,
so a lost event only delays an update.

Event types:
- message_inserted: a new inbound/outbound message row
- message_updated: delivery status or transcription changed
- conversation_changed: ordering, takeover or scheduling state changed
"""
import json
import logging
from typing import Any, AsyncIterator, Optional

logger = logging.getLogger(__name__)

CHANNEL = "visitflow:whatsapp_events"

MESSAGE_INSERTED = "message_inserted"
MESSAGE_UPDATED = "message_updated"
CONVERSATION_CHANGED = "conversation_changed"
EVENT_TYPES = (MESSAGE_INSERTED, MESSAGE_UPDATED, CONVERSATION_CHANGED)


async def publish_event(event_type: str, data: Optional[dict[str, Any]] = None) -> None:
    """Publish an event to every connected console. Never raises."""
    event = {
        "type": event_type,
        "data": data or {},
    }
    payload = json.dumps(event, default=str)

    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.publish(CHANNEL, payload)
        logger.debug("Event published: %s", event_type)
    except Exception:
        logger.warning("Failed to publish event: %s", event_type)


async def subscribe_events() -> AsyncIterator[dict[str, Any]]:
    """Yield decoded events from the channel until the consumer stops iterating."""
    from src.utils.dedup import get_redis
    redis = await get_redis()
    pubsub = redis.pubsub()
    await pubsub.subscribe(CHANNEL)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            raw = message.get("data")
            try:
                payload = raw if isinstance(raw, str) else raw.decode()
                event = json.loads(payload)
            except (json.JSONDecodeError, UnicodeDecodeError, AttributeError):
                continue
            if event.get("type") in EVENT_TYPES:
                yield event
    finally:
        try:
            await pubsub.unsubscribe(CHANNEL)
            await pubsub.aclose()
        except Exception as e:
            logger.debug("Pub/sub cleanup failed: %s", str(e))
