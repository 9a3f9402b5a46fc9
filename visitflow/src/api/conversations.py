"""
Staff conversation console API - list chats, read history, reply by hand,
toggle automation, and a Server-Sent Events stream of realtime changes.

Auth: shared staff token in X-Staff-Token (or ?token= for EventSource clients).
"""
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import get_db
from src.models.conversation import Conversation
from src.models.lead import Lead
from src.models.message import Message
from src.schemas.api_responses import (
    AutomationToggleRequest,
    ConversationListResponse,
    ConversationSummary,
    MessageListResponse,
    MessageOut,
    SendMessageRequest,
)
from src.services.event_bus import CONVERSATION_CHANGED, MESSAGE_INSERTED, publish_event, subscribe_events
from src.services.messages import record_outbound_message, serialize_conversation, serialize_message
from src.services.whatsapp import send_text
from src.utils.timezone import as_utc

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/whatsapp", tags=["conversations"])

MAX_CONVERSATIONS = 100
MAX_MESSAGES = 500


async def require_staff_token(
    x_staff_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
) -> None:
    expected = get_settings().staff_api_token
    provided = x_staff_token or token
    if not expected or not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid staff token")


async def _get_conversation(db: AsyncSession, conversation_id: str) -> Conversation:
    try:
        conv_uuid = uuid.UUID(conversation_id)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail="Invalid conversation ID format")
    conversation = await db.get(Conversation, conv_uuid)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_staff_token),
):
    """Most recently active conversations first, with unread counts."""
    last_message = (
        select(Message.content)
        .where(Message.conversation_id == Conversation.id)
        .order_by(Message.created_at.desc())
        .limit(1)
        .correlate(Conversation)
        .scalar_subquery()
    )
    unread = (
        select(func.count(Message.id))
        .where(
            Message.conversation_id == Conversation.id,
            Message.direction == "inbound",
            or_(Conversation.last_read_at.is_(None), Message.created_at > Conversation.last_read_at),
        )
        .correlate(Conversation)
        .scalar_subquery()
    )
    result = await db.execute(
        select(Conversation, Lead.name, last_message, unread)
        .outerjoin(Lead, Lead.id == Conversation.lead_id)
        .order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.created_at.desc())
        .limit(MAX_CONVERSATIONS)
    )

    conversations = [
        ConversationSummary(
            id=str(conv.id),
            phone=conv.phone,
            display_name=conv.display_name,
            lead_id=str(conv.lead_id) if conv.lead_id else None,
            lead_name=lead_name,
            automation_enabled=conv.automation_enabled,
            needs_human_followup=conv.needs_human_followup,
            pending_visit_step=conv.pending_visit_step or "none",
            last_message=last_content,
            last_message_at=as_utc(conv.last_message_at),
            unread_count=unread_count or 0,
        )
        for conv, lead_name, last_content, unread_count in result.all()
    ]
    return ConversationListResponse(conversations=conversations)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: str,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_staff_token),
):
    conversation = await _get_conversation(db, conversation_id)
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation.id)
        .order_by(Message.created_at.asc())
        .limit(MAX_MESSAGES)
    )
    messages = [MessageOut(**serialize_message(m)) for m in result.scalars().all()]
    return MessageListResponse(messages=messages)


@router.post("/conversations/{conversation_id}/messages", response_model=MessageOut)
async def send_staff_message(
    conversation_id: str,
    payload: SendMessageRequest,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_staff_token),
):
    """
    Staff reply. Sending by hand takes the conversation over: automation is
    switched off until someone turns it back on.
    """
    conversation = await _get_conversation(db, conversation_id)
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=422, detail="Message content is empty")

    send = await send_text(conversation.phone, content)
    if send["status"] != "sent":
        raise HTTPException(status_code=502, detail="WhatsApp send failed")

    message = await record_outbound_message(
        db, conversation, content, provider_message_id=send.get("message_id"),
    )
    if conversation.automation_enabled:
        conversation.automation_enabled = False
        conversation.human_takeover_at = datetime.now(timezone.utc)
        logger.info("Human takeover", extra={"conversation_id": str(conversation.id)})
    await db.commit()

    await publish_event(MESSAGE_INSERTED, serialize_message(message))
    await publish_event(CONVERSATION_CHANGED, serialize_conversation(conversation))
    return MessageOut(**serialize_message(message))


@router.post("/conversations/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_staff_token),
):
    conversation = await _get_conversation(db, conversation_id)
    conversation.last_read_at = datetime.now(timezone.utc)
    await db.commit()
    await publish_event(CONVERSATION_CHANGED, serialize_conversation(conversation))
    return {"status": "ok"}


@router.put("/conversations/{conversation_id}/automation")
async def set_automation(
    conversation_id: str,
    payload: AutomationToggleRequest,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_staff_token),
):
    conversation = await _get_conversation(db, conversation_id)
    conversation.automation_enabled = payload.enabled
    if payload.enabled:
        conversation.human_takeover_at = None
        conversation.needs_human_followup = False
    else:
        conversation.human_takeover_at = datetime.now(timezone.utc)
    conversation.updated_at = datetime.now(timezone.utc)
    await db.commit()

    logger.info(
        "Automation %s", "enabled" if payload.enabled else "disabled",
        extra={"conversation_id": str(conversation.id)},
    )
    data = serialize_conversation(conversation)
    await publish_event(CONVERSATION_CHANGED, data)
    return data


def format_sse(event: dict) -> str:
    return f"event: {event['type']}\ndata: {json.dumps(event.get('data') or {}, default=str)}\n\n"


async def _event_stream():
    yield ": connected\n\n"
    async for event in subscribe_events():
        yield format_sse(event)


@router.get("/events")
async def stream_events(_: None = Depends(require_staff_token)):
    """Realtime changes as Server-Sent Events (bridged from the Redis channel)."""
    return StreamingResponse(
        _event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
