"""
Z-API webhook endpoint - inbound WhatsApp messages and delivery callbacks.

Flow for type=message:
1. Shared-secret check (header X-Webhook-Token or ?token=)
2. Normalize + dedup on the provider messageId
3. Resolve conversation and store the message (committed on its own)
   then resolve + link the lead best-effort
4. Transcribe audio
5. Dispatch the agent turn in the background (when automation is on)

Only an auth failure gets a non-200 answer: Z-API retries anything else.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import get_db
from src.models.conversation import Conversation
from src.models.message import Message
from src.schemas.api_responses import WebhookAck
from src.services.agent_dispatch import dispatch_agent_turn
from src.services.event_bus import CONVERSATION_CHANGED, MESSAGE_INSERTED, MESSAGE_UPDATED, publish_event
from src.services.messages import (
    apply_status_update,
    record_outbound_message,
    serialize_conversation,
    serialize_message,
)
from src.services.normalizer import normalize_inbound, normalize_status
from src.services.resolver import (
    find_or_create_lead,
    get_or_create_conversation,
    link_conversation_lead,
    record_inbound_message,
)
from src.services.transcription import transcribe_message
from src.services.whatsapp import send_text
from src.utils.dedup import is_duplicate_delivery
from src.utils.phone import mask_phone

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhook", tags=["webhooks"])

AUDIO_FALLBACK_REPLY = (
    "Recebi seu áudio, mas não consegui entender direitinho 😕 Pode me mandar por texto, por favor?"
)


def _verify_token(provided: Optional[str]) -> None:
    settings = get_settings()
    expected = settings.webhook_token
    if not expected:
        if settings.app_env == "production":
            logger.error("Webhook token not configured in production, rejecting")
            raise HTTPException(status_code=401, detail="Invalid webhook token")
        return
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Webhook rejected: bad token")
        raise HTTPException(status_code=401, detail="Invalid webhook token")


@router.post("/zapi", response_model=WebhookAck)
async def zapi_webhook(
    request: Request,
    type: str = Query("message"),
    token: Optional[str] = Query(None),
    x_webhook_token: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    """Single Z-API callback URL; the event kind comes in ?type=."""
    _verify_token(x_webhook_token or token)

    try:
        payload = await request.json()
    except ValueError:
        return WebhookAck(status="ignored", detail="invalid_json")

    if type == "message":
        return await _handle_message(db, payload)
    if type == "message-status":
        return await _handle_status(db, payload)

    logger.info("Z-API %s event received", type)
    return WebhookAck(status="ok", detail=type)


async def _handle_message(db: AsyncSession, payload) -> WebhookAck:
    inbound = normalize_inbound(payload)
    if inbound is None:
        return WebhookAck(status="ignored")

    if await is_duplicate_delivery("message", inbound.message_id):
        return WebhookAck(status="duplicate")

    masked = mask_phone(inbound.phone)
    try:
        conversation = await get_or_create_conversation(db, inbound)
        message = await record_inbound_message(db, conversation, inbound)
        await db.commit()
    except (SQLAlchemyError, RuntimeError) as e:
        await db.rollback()
        logger.error("Failed to store inbound message from %s: %s", masked, str(e), exc_info=True)
        return WebhookAck(status="error", detail="storage_failed")
    if message is None:
        return WebhookAck(status="duplicate")

    cid = str(conversation.id)
    try:
        if not inbound.from_me:
            await _link_lead(db, conversation, message, inbound)
        return await _after_store(db, conversation, message, inbound)
    except Exception as e:
        # The message is stored; Z-API must still get a 2xx
        logger.error(
            "Inbound processing failed after storage: %s", str(e),
            exc_info=True, extra={"conversation_id": cid},
        )
        return WebhookAck(status="error", detail="processing_failed")


async def _link_lead(db: AsyncSession, conversation: Conversation, message: Message, inbound) -> None:
    """Best-effort: a failed lead link leaves the stored message alone and is retried on the next message."""
    try:
        lead = await find_or_create_lead(db, inbound.phone, inbound.display_name)
        await link_conversation_lead(db, conversation, lead)
        await db.commit()
    except (SQLAlchemyError, RuntimeError) as e:
        await db.rollback()
        logger.warning(
            "Lead link failed for %s: %s", mask_phone(inbound.phone), str(e),
            extra={"conversation_id": str(conversation.id)},
        )
        # rollback expired the committed rows; reload them for the rest of the request
        await db.refresh(conversation)
        await db.refresh(message)


async def _after_store(db: AsyncSession, conversation: Conversation, message: Message, inbound) -> WebhookAck:
    cid = str(conversation.id)
    masked = mask_phone(inbound.phone)
    logger.info(
        "Inbound %s from %s", inbound.body.kind, masked,
        extra={"conversation_id": cid, "message_id": inbound.message_id},
    )
    await publish_event(MESSAGE_INSERTED, serialize_message(message))
    await publish_event(CONVERSATION_CHANGED, serialize_conversation(conversation))

    if inbound.from_me:
        return WebhookAck(status="stored")

    text = inbound.text
    if message.media_type == "audio" and message.media_url:
        text = await transcribe_message(db, message)
        await db.commit()
        await publish_event(MESSAGE_UPDATED, serialize_message(message))
        if text is None:
            if conversation.automation_enabled:
                await _send_audio_fallback(db, conversation)
            return WebhookAck(status="transcription_failed")

    if not text:
        return WebhookAck(status="stored")
    if not conversation.automation_enabled:
        logger.info("Automation off (human takeover), agent skipped", extra={"conversation_id": cid})
        return WebhookAck(status="human_takeover")

    dispatch_agent_turn(cid, text)
    return WebhookAck(status="dispatched")


async def _send_audio_fallback(db: AsyncSession, conversation: Conversation) -> None:
    send = await send_text(conversation.phone, AUDIO_FALLBACK_REPLY)
    message = await record_outbound_message(
        db, conversation, AUDIO_FALLBACK_REPLY,
        provider_message_id=send.get("message_id"),
        status=send["status"],
        ai_response={"path": "fallback", "action": "transcription_failed"},
    )
    await db.commit()
    await publish_event(MESSAGE_INSERTED, serialize_message(message))


async def _handle_status(db: AsyncSession, payload) -> WebhookAck:
    status_update = normalize_status(payload)
    if status_update is None:
        return WebhookAck(status="ignored")

    try:
        messages: list[Message] = await apply_status_update(db, status_update)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Failed to apply message status: %s", str(e), exc_info=True)
        return WebhookAck(status="error", detail="storage_failed")

    for message in messages:
        await publish_event(MESSAGE_UPDATED, serialize_message(message))
    logger.info("Message status %s applied to %d rows", status_update.status, len(messages))
    return WebhookAck(status="ok", detail=status_update.status)
