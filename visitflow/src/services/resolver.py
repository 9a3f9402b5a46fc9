"""
Conversation/Lead resolver - maps a WhatsApp phone to durable rows.

Webhook delivery is at-least-once, so every write here is conditional:
inserts ignore conflicts on the natural key and re-select, links and broker
assignments only fill NULL columns. None of these functions commit; the
caller owns the transaction.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import dialect_insert
from src.models.conversation import Conversation
from src.models.lead import Lead
from src.models.message import Message
from src.models.profile import Profile
from src.schemas.webhook_payloads import InboundMessage
from src.utils.phone import mask_phone

logger = logging.getLogger(__name__)

# Staff roles eligible to own a lead, in priority order
ASSIGNABLE_ROLES = ("broker", "admin")


async def _select_conversation(db: AsyncSession, whatsapp_id: str) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation).where(Conversation.whatsapp_id == whatsapp_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_conversation(db: AsyncSession, inbound: InboundMessage) -> Conversation:
    """Find the conversation by whatsapp_id, creating it if this chat is new."""
    conversation = await _select_conversation(db, inbound.whatsapp_id)
    if conversation is None:
        await db.execute(
            dialect_insert(db, Conversation)
            .values(
                id=uuid.uuid4(),
                whatsapp_id=inbound.whatsapp_id,
                phone=inbound.phone,
                display_name=inbound.display_name,
            )
            .on_conflict_do_nothing(index_elements=["whatsapp_id"])
        )
        conversation = await _select_conversation(db, inbound.whatsapp_id)
        if conversation is None:
            raise RuntimeError("Conversation insert-or-select returned nothing")
        logger.info(
            "Conversation resolved for new chat",
            extra={"conversation_id": str(conversation.id), "phone": mask_phone(inbound.phone)},
        )
    elif inbound.display_name and not conversation.display_name:
        conversation.display_name = inbound.display_name
    return conversation


async def _select_lead(db: AsyncSession, phone: str) -> Optional[Lead]:
    result = await db.execute(select(Lead).where(Lead.phone == phone))
    return result.scalar_one_or_none()


async def find_or_create_lead(db: AsyncSession, phone: str, display_name: Optional[str] = None) -> Lead:
    """
    Upsert-with-ignore on the unique phone. A concurrent delivery that
    inserts first simply wins; existing leads are never modified.
    """
    lead = await _select_lead(db, phone)
    if lead is not None:
        return lead

    await db.execute(
        dialect_insert(db, Lead)
        .values(
            id=uuid.uuid4(),
            phone=phone,
            name=display_name or phone,
            source="whatsapp",
            status="new",
            priority="medium",
        )
        .on_conflict_do_nothing(index_elements=["phone"])
    )
    lead = await _select_lead(db, phone)
    if lead is None:
        raise RuntimeError("Lead insert-or-select returned nothing")
    logger.info("Lead resolved", extra={"lead_id": str(lead.id), "phone": mask_phone(phone)})
    return lead


async def link_conversation_lead(db: AsyncSession, conversation: Conversation, lead: Lead) -> None:
    """Attach the lead only if the conversation has none yet (never overwrites)."""
    await db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id, Conversation.lead_id.is_(None))
        .values(lead_id=lead.id)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(conversation, attribute_names=["lead_id"])


async def resolve(db: AsyncSession, inbound: InboundMessage) -> tuple[Conversation, Lead]:
    """Phone -> (Conversation, Lead), creating and linking as needed."""
    conversation = await get_or_create_conversation(db, inbound)
    lead = await find_or_create_lead(db, inbound.phone, inbound.display_name)
    await link_conversation_lead(db, conversation, lead)
    return conversation, lead


async def pick_staff_profile_id(db: AsyncSession) -> Optional[uuid.UUID]:
    """First active broker by seniority, falling back to the first active admin."""
    for role in ASSIGNABLE_ROLES:
        result = await db.execute(
            select(Profile.id)
            .where(Profile.role == role, Profile.is_active.is_(True))
            .order_by(Profile.created_at.asc())
            .limit(1)
        )
        profile_id = result.scalar_one_or_none()
        if profile_id is not None:
            return profile_id
    return None


async def get_or_assign_broker(db: AsyncSession, lead_id: uuid.UUID) -> Optional[uuid.UUID]:
    """
    Return the lead's broker, assigning one lazily.

    The assignment is a conditional update (broker_id IS NULL) followed by a
    re-read, so a concurrent assignment that landed first is what we return.
    """
    current = await db.execute(select(Lead.broker_id).where(Lead.id == lead_id))
    existing = current.scalar_one_or_none()
    if existing is not None:
        return existing

    picked = await pick_staff_profile_id(db)
    if picked is None:
        logger.warning("No active broker or admin to assign", extra={"lead_id": str(lead_id)})
        return None

    await db.execute(
        update(Lead)
        .where(Lead.id == lead_id, Lead.broker_id.is_(None))
        .values(broker_id=picked)
        .execution_options(synchronize_session=False)
    )
    reread = await db.execute(select(Lead.broker_id).where(Lead.id == lead_id))
    broker_id = reread.scalar_one_or_none()
    logger.info("Broker assigned", extra={"lead_id": str(lead_id)})
    return broker_id


async def record_inbound_message(
    db: AsyncSession,
    conversation: Conversation,
    inbound: InboundMessage,
) -> Optional[Message]:
    """
    Store a webhook message. Returns None when the provider message id was
    already stored (duplicate delivery).
    """
    now = datetime.now(timezone.utc)
    new_id = uuid.uuid4()
    is_audio = inbound.media_type == "audio" and not inbound.from_me and inbound.media_url

    await db.execute(
        dialect_insert(db, Message)
        .values(
            id=new_id,
            conversation_id=conversation.id,
            message_id=inbound.message_id,
            direction="outbound" if inbound.from_me else "inbound",
            content=inbound.text,
            media_type=inbound.media_type,
            media_url=inbound.media_url,
            status="sent" if inbound.from_me else "received",
            transcription_status="pending" if is_audio else None,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["message_id"])
    )
    message = await db.get(Message, new_id)
    if message is None:
        logger.info(
            "Duplicate provider message ignored",
            extra={"conversation_id": str(conversation.id), "message_id": inbound.message_id},
        )
        return None

    conversation.last_message_at = now
    return message
