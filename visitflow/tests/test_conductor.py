"""
Conductor tests - one inbound turn end to end: deterministic scheduling,
AI fallback, persistence failures and human handoff.
Z-API, the AI provider and Redis are mocked; the database is SQLite.
"""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from src.agents.conductor import (
    FALLBACK_REPLY,
    NO_BROKER_REPLY,
    VISIT_ERROR_REPLY,
    handle_agent_turn,
    mark_for_human_followup,
)
from src.agents.scheduling import CONFIRMED_REPLY, PAST_DATETIME_REPLY, RESCHEDULE_REPLY
from src.models.conversation import Conversation
from src.models.lead import Lead
from src.models.message import Message
from src.models.visit import Visit
from src.services.ai import AIPaymentRequiredError, AIRateLimitedError, AIServiceError
from src.utils.locks import LockTimeoutError

NOW = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)
VISIT_AT = datetime(2026, 1, 24, 20, 0, tzinfo=timezone.utc)  # 24/01 17:00 in São Paulo


# --- Helpers ---

async def _turn(db, conversation, text):
    return await handle_agent_turn(db, conversation.id, text, now=NOW)


async def _visits(db) -> list[tuple]:
    result = await db.execute(
        select(Visit.id, Visit.status, Visit.property_id, Visit.scheduled_at, Visit.broker_id)
        .order_by(Visit.created_at)
    )
    return list(result.all())


async def _outbound(db, conversation) -> list[Message]:
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation.id, Message.direction == "outbound")
        .order_by(Message.created_at)
    )
    return list(result.scalars().all())


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


@asynccontextmanager
async def _locked_out(*args, **kwargs):
    raise LockTimeoutError("busy")
    yield


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

class TestValidation:
    async def test_invalid_conversation_id(self, db, mock_whatsapp):
        result = await handle_agent_turn(db, "not-a-uuid", "oi")
        assert result["status"] == "invalid_conversation"
        mock_whatsapp.assert_not_awaited()

    async def test_empty_text(self, db, conversation, mock_whatsapp):
        result = await handle_agent_turn(db, conversation.id, "   ")
        assert result["status"] == "invalid_text"
        mock_whatsapp.assert_not_awaited()

    async def test_text_too_long(self, db, conversation, mock_whatsapp):
        result = await handle_agent_turn(db, conversation.id, "a" * 2001)
        assert result["status"] == "invalid_text"

    async def test_unknown_conversation(self, db, mock_whatsapp):
        result = await handle_agent_turn(db, uuid.uuid4(), "oi")
        assert result["status"] == "conversation_not_found"

    async def test_invalid_phone(self, db, mock_whatsapp):
        conv = Conversation(id=uuid.uuid4(), whatsapp_id="abc", phone="123")
        db.add(conv)
        await db.commit()
        result = await handle_agent_turn(db, str(conv.id), "oi")
        assert result["status"] == "invalid_phone"
        mock_whatsapp.assert_not_awaited()

    async def test_automation_disabled(self, db, conversation, mock_redis, mock_whatsapp):
        conversation.automation_enabled = False
        await db.commit()
        result = await _turn(db, conversation, "dia 24 às 17h")
        assert result["status"] == "automation_disabled"
        mock_whatsapp.assert_not_awaited()


# ---------------------------------------------------------------------------
# Deterministic scheduling flows
# ---------------------------------------------------------------------------

class TestSchedulingFlow:
    async def test_datetime_then_code_then_sim(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        # Datetime first: remembered, property requested
        result = await _turn(db, conversation, "Quero visitar dia 24 às 17h")
        assert result["status"] == "replied"
        assert result["path"] == "deterministic"
        assert result["action"] == "ask_property"
        assert "24/01/2026 às 17:00" in result["reply"]
        assert conversation.pending_visit_step == "awaiting_property"
        assert _as_utc(conversation.pending_visit_scheduled_at) == VISIT_AT

        # Property code: draft created and confirmation requested
        result = await _turn(db, conversation, "IMV-001")
        assert result["action"] == "create_draft"
        assert "rascunho" in result["reply"]
        assert "Apartamento 2 quartos (código IMV-001)" in result["reply"]
        assert "Rua das Flores 120, Centro - São Paulo/SP" in result["reply"]

        visits = await _visits(db)
        assert len(visits) == 1
        visit_id, status, property_id, scheduled_at, broker_id = visits[0]
        assert status == "scheduled"
        assert property_id == catalog["IMV-001"].id
        assert _as_utc(scheduled_at) == VISIT_AT
        assert broker_id == broker.id
        assert conversation.pending_visit_step == "awaiting_confirmation"
        assert conversation.pending_visit_id == visit_id
        assert conversation.lead_id is not None

        # SIM confirms and clears the slot set
        result = await _turn(db, conversation, "SIM")
        assert result["action"] == "confirm_visit"
        assert result["reply"] == CONFIRMED_REPLY
        assert (await _visits(db))[0][1] == "confirmed"
        assert conversation.pending_visit_step == "none"
        assert conversation.pending_visit_id is None
        assert conversation.pending_visit_property_id is None
        assert conversation.pending_visit_scheduled_at is None

        mock_ai.assert_not_awaited()
        assert mock_whatsapp.await_count == 3

    async def test_replayed_sim_does_not_create_or_confirm_again(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        await _turn(db, conversation, "IMV-001 dia 24 às 17h")
        await _turn(db, conversation, "sim")

        result = await _turn(db, conversation, "sim")
        assert result["path"] == "ai"
        assert result["action"] == "no_progress"
        visits = await _visits(db)
        assert len(visits) == 1
        assert visits[0][1] == "confirmed"

    async def test_ambiguous_address_then_choice(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        result = await _turn(db, conversation, "Quero visitar um imóvel no Centro")
        assert result["action"] == "ask_candidate_choice"
        assert "1) Apartamento 2 quartos (código IMV-001)" in result["reply"]
        assert "2) Cobertura duplex (código IMV-002)" in result["reply"]
        assert conversation.pending_visit_step == "awaiting_candidate_choice"
        assert len(conversation.pending_visit_candidates) == 2
        assert await _visits(db) == []

        result = await _turn(db, conversation, "2")
        assert result["action"] == "ask_datetime"
        assert "Cobertura duplex (código IMV-002)" in result["reply"]
        assert conversation.pending_visit_property_id == catalog["IMV-002"].id
        assert conversation.pending_visit_candidates is None

        result = await _turn(db, conversation, "dia 24 às 17h")
        assert result["action"] == "create_draft"
        visits = await _visits(db)
        assert visits[0][2] == catalog["IMV-002"].id

    async def test_invalid_choice_keeps_candidates(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        await _turn(db, conversation, "Quero visitar um imóvel no Centro")
        result = await _turn(db, conversation, "3")
        assert result["action"] == "invalid_choice"
        assert result["reply"].startswith("Não encontrei essa opção")
        assert conversation.pending_visit_step == "awaiting_candidate_choice"

    async def test_nao_reschedules_then_new_draft(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        await _turn(db, conversation, "IMV-003 dia 24 às 17h")
        first_visit = conversation.pending_visit_id

        result = await _turn(db, conversation, "Não")
        assert result["action"] == "reschedule_visit"
        assert result["reply"] == RESCHEDULE_REPLY
        assert conversation.pending_visit_step == "awaiting_datetime"
        assert conversation.pending_visit_property_id == catalog["IMV-003"].id
        assert conversation.pending_visit_id is None

        result = await _turn(db, conversation, "dia 25 às 10h")
        assert result["action"] == "create_draft"
        visits = await _visits(db)
        assert [v[1] for v in visits] == ["rescheduled", "scheduled"]
        assert visits[0][0] == first_visit
        assert conversation.pending_visit_id == visits[1][0]

    async def test_new_datetime_while_confirming_supersedes_draft(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        await _turn(db, conversation, "IMV-003 dia 24 às 17h")
        result = await _turn(db, conversation, "melhor dia 26 às 15h")
        assert result["action"] == "create_draft"
        visits = await _visits(db)
        assert [v[1] for v in visits] == ["rescheduled", "scheduled"]
        assert conversation.pending_visit_id == visits[1][0]

    async def test_past_datetime_rejected(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        result = await _turn(db, conversation, "IMV-001 hoje às 8h")
        assert result["action"] == "reject_past_datetime"
        assert result["reply"] == PAST_DATETIME_REPLY
        assert await _visits(db) == []
        assert conversation.pending_visit_scheduled_at is None

    async def test_outbound_row_records_path(
        self, db, conversation, catalog, broker, mock_redis, mock_whatsapp, mock_ai,
    ):
        await _turn(db, conversation, "dia 24 às 17h")
        messages = await _outbound(db, conversation)
        assert len(messages) == 1
        assert messages[0].message_id == "ZAPI_test_1"
        assert messages[0].ai_processed is True
        assert messages[0].ai_response["path"] == "deterministic"
        assert messages[0].ai_response["action"] == "ask_property"
        mock_whatsapp.assert_awaited_once()
        assert mock_whatsapp.await_args.args[0] == conversation.phone


# ---------------------------------------------------------------------------
# Failures and handoff
# ---------------------------------------------------------------------------

class TestFailures:
    async def test_no_broker_hands_off(self, db, conversation, catalog, mock_redis, mock_whatsapp, mock_ai):
        result = await _turn(db, conversation, "IMV-001 dia 24 às 17h")
        assert result["status"] == "no_broker"
        assert result["reply"] == NO_BROKER_REPLY
        assert await _visits(db) == []
        assert conversation.needs_human_followup is True
        mock_whatsapp.assert_awaited_once()

    async def test_visit_insert_failure_keeps_slots(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        await _turn(db, conversation, "dia 24 às 17h")

        with patch("src.agents.conductor.create_draft_visit", side_effect=SQLAlchemyError("boom")):
            result = await _turn(db, conversation, "IMV-001")

        assert result["status"] == "persistence_error"
        assert result["reply"] == VISIT_ERROR_REPLY
        assert await _visits(db) == []
        assert conversation.pending_visit_step == "awaiting_property"
        assert _as_utc(conversation.pending_visit_scheduled_at) == VISIT_AT
        assert conversation.needs_human_followup is True
        # Lead creation rolled back with the rest of the turn
        assert (await db.execute(select(func.count()).select_from(Lead))).scalar_one() == 0

    async def test_send_failure_flags_conversation(
        self, db, conversation, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        mock_whatsapp.side_effect = None
        mock_whatsapp.return_value = {
            "status": "failed", "message_id": None, "provider": "zapi", "error": "timeout",
        }
        result = await _turn(db, conversation, "dia 24 às 17h")
        assert result["status"] == "send_failed"
        assert conversation.needs_human_followup is True
        messages = await _outbound(db, conversation)
        assert messages[0].status == "failed"
        # The slot set still advanced
        assert conversation.pending_visit_step == "awaiting_property"

    async def test_lock_timeout_flags_without_reply(self, db, conversation, mock_redis, mock_whatsapp, mock_ai):
        with patch("src.agents.conductor.conversation_lock", _locked_out):
            result = await _turn(db, conversation, "dia 24 às 17h")
        assert result["status"] == "lock_timeout"
        mock_whatsapp.assert_not_awaited()
        await db.refresh(conversation)
        assert conversation.needs_human_followup is True
        mock_redis.publish.assert_awaited()


# ---------------------------------------------------------------------------
# AI path
# ---------------------------------------------------------------------------

class TestAIPath:
    async def test_unparsed_text_goes_to_agent(self, db, conversation, catalog, mock_redis, mock_whatsapp, mock_ai):
        result = await _turn(db, conversation, "Oi, tudo bem?")
        assert result["path"] == "ai"
        assert result["reply"].startswith("Oi! Sou a Sofia")
        messages = await _outbound(db, conversation)
        assert messages[0].ai_response["provider"] == "anthropic"
        assert messages[0].ai_response["input_tokens"] == 100

    async def test_grounding_and_history_sent_to_model(
        self, db, conversation, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        await _turn(db, conversation, "Oi, tudo bem?")
        messages = mock_ai.await_args.args[0]
        assert messages[0]["role"] == "system"
        assert "Sofia" in messages[0]["content"]
        assert "IMV-001" in messages[1]["content"]
        assert messages[-1] == {"role": "user", "content": "Oi, tudo bem?"}

    @pytest.mark.parametrize("error,status", [
        (AIRateLimitedError("anthropic rate limited"), "ai_rate_limited"),
        (AIPaymentRequiredError("openai payment required"), "ai_payment_required"),
    ])
    async def test_rate_limit_and_payment_send_nothing(
        self, db, conversation, mock_redis, mock_whatsapp, mock_ai, error, status,
    ):
        mock_ai.side_effect = error
        result = await _turn(db, conversation, "Oi, tudo bem?")
        assert result["status"] == status
        assert result["reply"] is None
        mock_whatsapp.assert_not_awaited()
        assert await _outbound(db, conversation) == []
        await db.refresh(conversation)
        assert conversation.needs_human_followup is True

    async def test_other_ai_error_sends_fallback(self, db, conversation, mock_redis, mock_whatsapp, mock_ai):
        mock_ai.side_effect = AIServiceError("anthropic error: 500")
        result = await _turn(db, conversation, "Oi, tudo bem?")
        assert result["path"] == "fallback"
        assert result["reply"] == FALLBACK_REPLY
        mock_whatsapp.assert_awaited_once()

    async def test_empty_model_text_sends_fallback(self, db, conversation, mock_redis, mock_whatsapp, mock_ai):
        mock_ai.return_value = {**mock_ai.return_value, "content": ""}
        result = await _turn(db, conversation, "Oi, tudo bem?")
        assert result["reply"] == FALLBACK_REPLY

    async def test_tool_call_runs_through_state_machine(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        mock_ai.return_value = {
            **mock_ai.return_value,
            "content": "Vou agendar!",
            "tool_calls": [{
                "id": "toolu_1",
                "name": "schedule_visit",
                "arguments": {
                    "property_code": "IMV-003",
                    "scheduled_at_iso": "2026-01-24T17:00:00-03:00",
                    "notes": "prefere à tarde",
                },
            }],
        }
        result = await _turn(db, conversation, "pode ser aquela casa com quintal, sábado fim de tarde")
        assert result["path"] == "ai"
        assert result["action"] == "create_draft"
        assert "Casa com quintal (código IMV-003)" in result["reply"]

        result_rows = await db.execute(select(Visit.notes, Visit.scheduled_at))
        notes, scheduled_at = result_rows.one()
        assert _as_utc(scheduled_at) == VISIT_AT
        assert "Fuso: America/Sao_Paulo" in notes
        assert "Obs: prefere à tarde" in notes

    async def test_tool_call_without_datetime_asks_for_it(
        self, db, conversation, broker, catalog, mock_redis, mock_whatsapp, mock_ai,
    ):
        conversation.pending_visit_step = "awaiting_datetime"
        conversation.pending_visit_property_id = catalog["IMV-003"].id
        await db.commit()
        mock_ai.return_value = {
            **mock_ai.return_value,
            "tool_calls": [{"id": "toolu_2", "name": "schedule_visit", "arguments": {"property_code": "IMV-003"}}],
        }
        result = await _turn(db, conversation, "pode ser quando for melhor pra vocês")
        assert result["action"] == "no_progress"
        assert "data e a hora" in result["reply"]
        assert await _visits(db) == []


class TestMarkForHumanFollowup:
    async def test_flags_and_publishes(self, db, conversation, mock_redis):
        await mark_for_human_followup(conversation.id, "agent_crashed", db=db)
        await db.refresh(conversation)
        assert conversation.needs_human_followup is True
        mock_redis.publish.assert_awaited_once()

    async def test_invalid_id_is_ignored(self, db, mock_redis):
        await mark_for_human_followup("nope", "agent_crashed", db=db)
        mock_redis.publish.assert_not_awaited()

    async def test_opens_own_session(self, db, conversation, mock_redis):
        session_cm = AsyncMock()
        session_cm.__aenter__.return_value = db
        with patch("src.database.async_session_factory", return_value=session_cm):
            await mark_for_human_followup(conversation.id, "agent_crashed")
        await db.refresh(conversation)
        assert conversation.needs_human_followup is True
