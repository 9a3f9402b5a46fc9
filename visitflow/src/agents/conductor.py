"""
Conductor - runs one agent turn for an inbound WhatsApp message.

Order of a turn (under the per-conversation lock):
  1. Deterministic parse: SIM/NÃO, candidate choice, date/time, code, address.
  2. Scheduling state machine. If it made progress, its side effects (visit
     insert/update + conversation slots) commit as one unit.
  3. Otherwise the AI agent. A schedule_visit tool call goes back through the
     same state machine; plain text is sent as-is.
  4. Exactly one WhatsApp send, then the outbound row and realtime events.

Rate limits (429) and payment failures (402) from the AI provider flag the
conversation for a human and send nothing.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.agents.scheduling import (
    Action,
    SchedulingState,
    SlotUpdate,
    Transition,
    VisitStep,
    advance,
    build_reply,
)
from src.agents.visit_agent import guided_reply, run_visit_agent, slots_from_tool_args
from src.config import get_settings
from src.models.conversation import Conversation
from src.models.visit import Visit
from src.schemas.scheduling import PropertyResolution
from src.services.ai import AIPaymentRequiredError, AIRateLimitedError, AIServiceError
from src.services.event_bus import CONVERSATION_CHANGED, MESSAGE_INSERTED, publish_event
from src.services.messages import record_outbound_message, serialize_conversation, serialize_message
from src.services.properties import get_property, resolve_property
from src.services.resolver import find_or_create_lead, get_or_assign_broker, link_conversation_lead
from src.services.slots import (
    extract_property_code,
    extract_property_query,
    extract_property_uuid,
    parse_candidate_choice,
    parse_datetime,
    parse_yes_no,
)
from src.services.whatsapp import send_text
from src.utils.locks import LockTimeoutError, conversation_lock
from src.utils.metrics import Timer
from src.utils.phone import mask_phone, normalize_whatsapp_phone
from src.utils.timezone import as_utc, get_default_tz

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "Desculpe, tive uma instabilidade agora 🙏 Um colega vai continuar o atendimento por aqui em instantes."
)
NO_BROKER_REPLY = (
    "Perfeito! Vou pedir para um corretor confirmar o agendamento com você por aqui "
    "e já registrar a visita no sistema."
)
VISIT_ERROR_REPLY = (
    "Tive um problema ao registrar a visita agora. Um corretor vai te atender por aqui "
    "e confirmar o agendamento."
)


def _result(
    conversation_id: Optional[str],
    status: str,
    timer: Timer,
    path: Optional[str] = None,
    action: Optional[str] = None,
    reply: Optional[str] = None,
) -> dict:
    return {
        "conversation_id": conversation_id,
        "status": status,
        "path": path,
        "action": action,
        "reply": reply,
        "response_ms": timer.stop(),
    }


def _parse_uuid(raw) -> Optional[uuid.UUID]:
    if isinstance(raw, uuid.UUID):
        return raw
    try:
        return uuid.UUID(str(raw))
    except (ValueError, TypeError):
        return None


async def handle_agent_turn(
    db: AsyncSession,
    conversation_id,
    text: str,
    now: Optional[datetime] = None,
) -> dict:
    """
    Produce and send the reply for one inbound text.

    Returns: {
        "conversation_id", "status", "path": "deterministic"|"ai"|"fallback"|None,
        "action", "reply", "response_ms",
    }
    """
    timer = Timer().start()
    settings = get_settings()

    cid = _parse_uuid(conversation_id)
    if cid is None:
        logger.warning("Agent turn rejected: invalid conversation id")
        return _result(None, "invalid_conversation", timer)

    text = (text or "").strip()
    if not text or len(text) > settings.max_message_chars:
        logger.warning("Agent turn rejected: text_len=%d", len(text), extra={"conversation_id": str(cid)})
        return _result(str(cid), "invalid_text", timer)

    conversation = await db.get(Conversation, cid)
    if conversation is None:
        return _result(str(cid), "conversation_not_found", timer)
    if not normalize_whatsapp_phone(conversation.phone):
        logger.warning("Agent turn rejected: invalid phone", extra={"conversation_id": str(cid)})
        return _result(str(cid), "invalid_phone", timer)

    try:
        async with conversation_lock(str(cid)):
            # Another turn may have committed while we waited
            await db.refresh(conversation)
            if not conversation.automation_enabled:
                return _result(str(cid), "automation_disabled", timer)
            return await _process_turn_locked(
                db, conversation, text, now or datetime.now(timezone.utc), timer,
            )
    except LockTimeoutError:
        logger.warning(
            "Lock timeout for conversation %s, handing to a human", str(cid)[:8],
            extra={"conversation_id": str(cid)},
        )
        await mark_for_human_followup(cid, "lock_timeout", db=db)
        return _result(str(cid), "lock_timeout", timer)


async def build_deterministic_update(
    db: AsyncSession,
    state: SchedulingState,
    text: str,
    now: datetime,
    tz: Optional[tzinfo] = None,
) -> SlotUpdate:
    """Everything the regex parser can pull out of this turn."""
    settings = get_settings()
    prefix = settings.property_code_prefix

    yes_no = parse_yes_no(text) if state.step == VisitStep.AWAITING_CONFIRMATION else None
    choice = (
        parse_candidate_choice(text, prefix)
        if state.step == VisitStep.AWAITING_CANDIDATE_CHOICE
        else None
    )

    resolution = PropertyResolution.none()
    if state.property_id is None and yes_no is None:
        explicit_id = extract_property_uuid(text)
        code = extract_property_code(text, prefix)
        if explicit_id or code:
            resolution = await resolve_property(db, property_id=explicit_id, code=code)
        elif choice is None:
            query = extract_property_query(text, prefix)
            if query:
                resolution = await resolve_property(db, address=query)

    return SlotUpdate(
        scheduled_at=parse_datetime(text, now, tz),
        property_match=resolution,
        yes_no=yes_no,
        choice=choice,
        timezone_name=settings.default_timezone,
    )


async def _process_turn_locked(
    db: AsyncSession,
    conversation: Conversation,
    text: str,
    now: datetime,
    timer: Timer,
) -> dict:
    settings = get_settings()
    tz = get_default_tz()
    grace = timedelta(minutes=settings.schedule_grace_minutes)
    cid = str(conversation.id)

    state = SchedulingState.from_conversation(conversation)
    parsed = await build_deterministic_update(db, state, text, now, tz)
    transition = advance(state, parsed, now, grace)

    path = "deterministic"
    ai_meta: dict = {}
    status = "replied"

    if transition.made_progress:
        reply, status = await _execute_transition(db, conversation, transition, tz)
    else:
        try:
            agent = await run_visit_agent(db, conversation, text)
        except AIRateLimitedError:
            await mark_for_human_followup(conversation.id, "ai_rate_limited", db=db)
            return _result(cid, "ai_rate_limited", timer, path="ai")
        except AIPaymentRequiredError:
            await mark_for_human_followup(conversation.id, "ai_payment_required", db=db)
            return _result(cid, "ai_payment_required", timer, path="ai")
        except AIServiceError as e:
            logger.error("Visit agent failed: %s", str(e), extra={"conversation_id": cid})
            path, reply = "fallback", FALLBACK_REPLY
        else:
            path = "ai"
            ai_meta = {
                "provider": agent.provider,
                "model": agent.model,
                "input_tokens": agent.input_tokens,
                "output_tokens": agent.output_tokens,
                "cost_usd": agent.cost_usd,
                "tool_calls": agent.tool_calls,
            }
            if agent.tool_call is not None:
                tool_update = await slots_from_tool_args(db, agent.tool_call, now, tz)
                transition = advance(state, tool_update, now, grace)
                if transition.made_progress:
                    reply, status = await _execute_transition(db, conversation, transition, tz)
                else:
                    reply = guided_reply(tool_update)
            else:
                reply = agent.message or FALLBACK_REPLY

    return await _send_and_record(
        db, conversation, reply, timer,
        path=path, action=transition.action.value, status=status, ai_meta=ai_meta,
    )


async def _ensure_lead_id(db: AsyncSession, conversation: Conversation) -> uuid.UUID:
    if conversation.lead_id is not None:
        return conversation.lead_id
    lead = await find_or_create_lead(db, conversation.phone, conversation.display_name)
    await link_conversation_lead(db, conversation, lead)
    return conversation.lead_id


def _draft_notes(timezone_name: Optional[str], notes: Optional[str]) -> str:
    parts = ["Rascunho criado pela IA (WhatsApp)"]
    if timezone_name:
        parts.append(f"Fuso: {timezone_name}")
    if notes:
        parts.append(f"Obs: {notes}")
    return " | ".join(parts)


async def create_draft_visit(
    db: AsyncSession,
    lead_id: uuid.UUID,
    broker_id: uuid.UUID,
    transition: Transition,
) -> Visit:
    draft = transition.draft
    if draft.supersedes_visit_id:
        await _set_visit_status(db, draft.supersedes_visit_id, "rescheduled")
    visit = Visit(
        id=uuid.uuid4(),
        lead_id=lead_id,
        property_id=uuid.UUID(draft.property_id),
        broker_id=broker_id,
        scheduled_at=as_utc(draft.scheduled_at),
        status="scheduled",
        notes=_draft_notes(draft.timezone_name, draft.notes),
    )
    db.add(visit)
    await db.flush()
    return visit


async def _set_visit_status(db: AsyncSession, visit_id: Optional[str], status: str) -> None:
    if not visit_id:
        return
    await db.execute(
        update(Visit)
        .where(Visit.id == uuid.UUID(visit_id))
        .values(status=status, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )


async def _execute_transition(
    db: AsyncSession,
    conversation: Conversation,
    transition: Transition,
    tz: tzinfo,
) -> tuple[str, str]:
    """
    Run a transition's side effects and persist the next state in one commit.
    Returns (reply, status). On a database failure everything rolls back and
    the conversation keeps its previous slots.
    """
    settings = get_settings()
    cid = str(conversation.id)
    prop = None

    try:
        if transition.action == Action.CREATE_DRAFT:
            lead_id = await _ensure_lead_id(db, conversation)
            broker_id = await get_or_assign_broker(db, lead_id)
            if broker_id is None:
                conversation.needs_human_followup = True
                await db.commit()
                logger.warning("No broker for draft visit, handing to a human", extra={"conversation_id": cid})
                return NO_BROKER_REPLY, "no_broker"

            visit = await create_draft_visit(db, lead_id, broker_id, transition)
            transition.complete(str(visit.id)).apply_to(conversation)
            prop = await get_property(db, transition.draft.property_id)
            logger.info(
                "Draft visit created",
                extra={"conversation_id": cid, "visit_id": str(visit.id), "lead_id": str(lead_id)},
            )
        elif transition.action == Action.CONFIRM_VISIT:
            await _set_visit_status(db, transition.visit_id, "confirmed")
            transition.state.apply_to(conversation)
            logger.info("Visit confirmed", extra={"conversation_id": cid, "visit_id": transition.visit_id})
        elif transition.action == Action.RESCHEDULE_VISIT:
            await _set_visit_status(db, transition.visit_id, "rescheduled")
            transition.state.apply_to(conversation)
            prop = await get_property(db, transition.state.property_id)
            logger.info("Visit rescheduled", extra={"conversation_id": cid, "visit_id": transition.visit_id})
        else:
            transition.state.apply_to(conversation)
            if transition.state.property_id:
                prop = await get_property(db, transition.state.property_id)

        conversation.updated_at = datetime.now(timezone.utc)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        await db.refresh(conversation)
        conversation.needs_human_followup = True
        logger.error(
            "Scheduling side effects failed (%s): %s", transition.action.value, str(e),
            extra={"conversation_id": cid},
        )
        return VISIT_ERROR_REPLY, "persistence_error"

    reply = build_reply(transition, prop, settings.property_code_prefix, tz)
    return reply or FALLBACK_REPLY, "replied"


async def _send_and_record(
    db: AsyncSession,
    conversation: Conversation,
    reply: str,
    timer: Timer,
    path: str,
    action: str,
    status: str,
    ai_meta: dict,
) -> dict:
    cid = str(conversation.id)
    send = await send_text(conversation.phone, reply)
    if send["status"] != "sent":
        conversation.needs_human_followup = True
        status = "send_failed"

    message = await record_outbound_message(
        db, conversation, reply,
        provider_message_id=send.get("message_id"),
        status=send["status"],
        ai_response={"path": path, "action": action, **ai_meta},
    )
    await db.commit()

    await publish_event(MESSAGE_INSERTED, serialize_message(message))
    await publish_event(CONVERSATION_CHANGED, serialize_conversation(conversation))

    result = _result(cid, status, timer, path=path, action=action, reply=reply)
    logger.info(
        "Agent turn done: path=%s action=%s status=%s %dms to %s",
        path, action, status, result["response_ms"], mask_phone(conversation.phone),
        extra={"conversation_id": cid},
    )
    return result


async def mark_for_human_followup(
    conversation_id,
    reason: str,
    db: Optional[AsyncSession] = None,
) -> None:
    """Flag a conversation so staff pick it up. Opens its own session when none is given."""
    cid = _parse_uuid(conversation_id)
    if cid is None:
        return

    async def _flag(session: AsyncSession) -> None:
        await session.execute(
            update(Conversation)
            .where(Conversation.id == cid)
            .values(needs_human_followup=True)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    try:
        if db is not None:
            await _flag(db)
        else:
            from src.database import async_session_factory
            async with async_session_factory() as session:
                await _flag(session)
    except SQLAlchemyError as e:
        logger.error(
            "Could not flag conversation for follow-up (%s): %s", reason, str(e),
            extra={"conversation_id": str(cid)},
        )
        return

    logger.info("Conversation flagged for human follow-up: %s", reason, extra={"conversation_id": str(cid)})
    await publish_event(CONVERSATION_CHANGED, {"id": str(cid), "needs_human_followup": True})
