"""
Message log helpers - outbound rows, delivery status updates, and the
JSON shapes shared by the staff API and the realtime events.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.conversation import Conversation
from src.models.message import Message
from src.schemas.webhook_payloads import MessageStatusUpdate
from src.utils.timezone import as_utc

logger = logging.getLogger(__name__)


def serialize_message(message: Message) -> dict:
    return {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "message_id": message.message_id,
        "direction": message.direction,
        "content": message.content,
        "media_type": message.media_type,
        "media_url": message.media_url,
        "status": message.status,
        "ai_processed": message.ai_processed,
        "transcription": message.transcription,
        "transcription_status": message.transcription_status,
        "created_at": as_utc(message.created_at).isoformat() if message.created_at else None,
    }


def serialize_conversation(conversation: Conversation) -> dict:
    return {
        "id": str(conversation.id),
        "phone": conversation.phone,
        "display_name": conversation.display_name,
        "lead_id": str(conversation.lead_id) if conversation.lead_id else None,
        "automation_enabled": conversation.automation_enabled,
        "needs_human_followup": conversation.needs_human_followup,
        "pending_visit_step": conversation.pending_visit_step,
        "last_message_at": (
            as_utc(conversation.last_message_at).isoformat() if conversation.last_message_at else None
        ),
    }


async def record_outbound_message(
    db: AsyncSession,
    conversation: Conversation,
    content: str,
    provider_message_id: Optional[str] = None,
    status: str = "sent",
    ai_response: Optional[dict] = None,
) -> Message:
    """Append an outbound message and bump the conversation's last activity."""
    now = datetime.now(timezone.utc)
    message = Message(
        id=uuid.uuid4(),
        conversation_id=conversation.id,
        message_id=provider_message_id,
        direction="outbound",
        content=content,
        status=status,
        ai_processed=ai_response is not None,
        ai_response=ai_response or {},
        created_at=now,
    )
    db.add(message)
    conversation.last_message_at = now
    await db.flush()
    return message


async def apply_status_update(db: AsyncSession, status_update: MessageStatusUpdate) -> list[Message]:
    """Set delivery status on the messages with these provider ids."""
    await db.execute(
        update(Message)
        .where(Message.message_id.in_(status_update.message_ids))
        .values(status=status_update.status)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(Message)
        .where(Message.message_id.in_(status_update.message_ids))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
