"""
Visit agent tests - grounding context, history, and schedule_visit tool
translation into SlotUpdate.
"""
import uuid
from datetime import datetime, timedelta, timezone

from src.agents.visit_agent import (
    ASK_DATETIME_GUIDE,
    ASK_PROPERTY_GUIDE,
    NO_PROPERTIES_CONTEXT,
    SCHEDULE_VISIT_TOOL,
    format_property_context,
    guided_reply,
    load_history,
    run_visit_agent,
    slots_from_tool_args,
    _parse_tool_args,
)
from src.agents.scheduling import SlotUpdate
from src.models.message import Message
from src.schemas.agent_responses import ScheduleVisitArgs

NOW = datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)
SP = timezone(timedelta(hours=-3))


class TestToolDefinition:
    def test_schedule_visit_parameters_cover_args(self):
        params = SCHEDULE_VISIT_TOOL["function"]["parameters"]["properties"]
        assert set(params) == set(ScheduleVisitArgs.model_fields)
        assert SCHEDULE_VISIT_TOOL["function"]["parameters"]["required"] == []


class TestPropertyContext:
    def test_empty_catalog(self):
        assert format_property_context([]) == NO_PROPERTIES_CONTEXT

    async def test_lists_every_attribute(self, db, catalog):
        context = format_property_context([catalog["IMV-001"]])
        assert f"ID: {catalog['IMV-001'].id}" in context
        assert "Código: IMV-001" in context
        assert "Endereço: Rua das Flores 120, Centro - São Paulo/SP" in context
        assert "Quartos: 2 | Banheiros: 1" in context
        assert "Aluguel: R$ 2.800,00 | Venda: -" in context


class TestHistory:
    async def test_oldest_first_with_roles(self, db, conversation):
        base = datetime(2026, 1, 20, 11, 0, tzinfo=timezone.utc)
        rows = [
            ("inbound", "Oi", None),
            ("outbound", "Olá! Como posso ajudar?", None),
            ("inbound", None, "quero visitar amanhã"),
            ("inbound", None, None),
        ]
        for i, (direction, content, transcription) in enumerate(rows):
            db.add(Message(
                id=uuid.uuid4(), conversation_id=conversation.id, direction=direction,
                content=content, transcription=transcription, created_at=base + timedelta(minutes=i),
            ))
        await db.commit()

        history = await load_history(db, conversation.id)
        assert history == [
            {"role": "user", "content": "Oi"},
            {"role": "assistant", "content": "Olá! Como posso ajudar?"},
            {"role": "user", "content": "quero visitar amanhã"},
        ]

    async def test_limit_keeps_most_recent(self, db, conversation):
        base = datetime(2026, 1, 20, 11, 0, tzinfo=timezone.utc)
        for i in range(5):
            db.add(Message(
                id=uuid.uuid4(), conversation_id=conversation.id, direction="inbound",
                content=f"msg {i}", created_at=base + timedelta(minutes=i),
            ))
        await db.commit()
        history = await load_history(db, conversation.id, limit=2)
        assert [m["content"] for m in history] == ["msg 3", "msg 4"]


class TestRunVisitAgent:
    async def test_current_text_not_duplicated(self, db, conversation, mock_ai):
        db.add(Message(id=uuid.uuid4(), conversation_id=conversation.id, direction="inbound", content="Oi"))
        await db.commit()

        reply = await run_visit_agent(db, conversation, "Oi")
        messages = mock_ai.await_args.args[0]
        assert [m for m in messages if m["role"] == "user"] == [{"role": "user", "content": "Oi"}]
        assert messages[1]["content"] == NO_PROPERTIES_CONTEXT
        assert reply.provider == "anthropic"
        assert reply.tool_call is None

    async def test_tool_call_parsed(self, db, conversation, mock_ai):
        mock_ai.return_value = {
            **mock_ai.return_value,
            "tool_calls": [{"id": "t1", "name": "schedule_visit", "arguments": {"property_code": "IMV-002"}}],
        }
        reply = await run_visit_agent(db, conversation, "quero o segundo")
        assert reply.tool_call.property_code == "IMV-002"
        assert len(reply.tool_calls) == 1


class TestParseToolArgs:
    def test_ignores_other_tools(self):
        assert _parse_tool_args([{"name": "other", "arguments": {}}]) is None

    def test_non_string_values_coerced(self):
        args = _parse_tool_args([{"name": "schedule_visit", "arguments": {"property_code": 1, "notes": None}}])
        assert args.property_code == "1"
        assert args.notes is None


class TestSlotsFromToolArgs:
    async def test_iso_datetime_and_code(self, db, catalog):
        args = ScheduleVisitArgs(property_code="IMV-003", scheduled_at_iso="2026-01-24T17:00:00-03:00")
        update = await slots_from_tool_args(db, args, NOW, SP)
        assert update.property_match.kind == "resolved"
        assert update.property_match.property_id == str(catalog["IMV-003"].id)
        assert update.scheduled_at == datetime(2026, 1, 24, 17, 0, tzinfo=SP)
        assert update.timezone_name == "America/Sao_Paulo"

    async def test_naive_iso_gets_default_offset(self, db, catalog):
        args = ScheduleVisitArgs(scheduled_at_iso="2026-01-24T17:00:00")
        update = await slots_from_tool_args(db, args, NOW, SP)
        assert update.scheduled_at == datetime(2026, 1, 24, 17, 0, tzinfo=SP)

    async def test_bad_iso_falls_back_to_text(self, db, catalog):
        args = ScheduleVisitArgs(scheduled_at_iso="sábado", scheduled_at_text="dia 24 às 17h")
        update = await slots_from_tool_args(db, args, NOW, SP)
        assert update.scheduled_at == datetime(2026, 1, 24, 17, 0, tzinfo=SP)

    async def test_ambiguous_address(self, db, catalog):
        args = ScheduleVisitArgs(property_address="Rua das Flores", timezone="Horário de Brasília")
        update = await slots_from_tool_args(db, args, NOW, SP)
        assert update.property_match.kind == "ambiguous"
        assert update.timezone_name == "America/Sao_Paulo"

    async def test_notes_trimmed(self, db, catalog):
        update = await slots_from_tool_args(db, ScheduleVisitArgs(notes="   "), NOW, SP)
        assert update.notes is None


class TestGuidedReply:
    def test_missing_datetime(self):
        assert guided_reply(SlotUpdate()) == ASK_DATETIME_GUIDE

    def test_missing_property(self):
        assert guided_reply(SlotUpdate(scheduled_at=NOW)) == ASK_PROPERTY_GUIDE
