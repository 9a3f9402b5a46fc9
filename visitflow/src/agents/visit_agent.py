"""
Visit Agent - AI fallback for turns the deterministic parser could not use.
Persona "Sofia". Grounded on up to 5 available properties, given the recent
history, and allowed exactly one tool: schedule_visit.

The tool call is never executed here. It is translated into a SlotUpdate and
pushed through the same scheduling state machine as parsed text.
"""
import logging
from datetime import datetime, tzinfo
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.agents.scheduling import SlotUpdate
from src.config import get_settings
from src.models.conversation import Conversation
from src.models.message import Message
from src.prompts.humanizer import WHATSAPP_HUMANIZER
from src.schemas.agent_responses import AgentReply, ScheduleVisitArgs
from src.services.ai import generate_with_tools
from src.services.properties import format_address, list_available_properties, resolve_property
from src.services.slots import parse_datetime
from src.utils.timezone import canonical_timezone_name, ensure_aware

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """Você é a assistente virtual de uma imobiliária moderna. Seu nome é Sofia.

**Seu papel:**
- Atender clientes interessados em comprar, alugar ou vender imóveis
- Coletar informações sobre as preferências do cliente (tipo de imóvel, localização, número de quartos, orçamento)
- Agendar visitas aos imóveis
- Responder dúvidas sobre financiamento, documentação e processo de compra/aluguel
- Ser cordial, profissional e prestativa

**Diretrizes:**
- Sempre cumprimente o cliente de forma amigável
- Faça perguntas para entender melhor o que o cliente procura
- Quando o cliente demonstrar interesse em um imóvel específico, ofereça agendar uma visita
- Mantenha respostas concisas e objetivas (máximo 3-4 frases por mensagem)
- Use emojis com moderação para tornar a conversa mais amigável
- Se não souber algo, diga que vai verificar com a equipe e retorna

**Regra de fluxo (agendamento):**
- Se o cliente já informou *data/hora* e em seguida informar *endereço/código do imóvel*, seu objetivo principal é *finalizar o agendamento* e pedir confirmação *SIM/NÃO*.
- Para registrar uma visita, chame a ferramenta schedule_visit. Nunca diga que a visita foi agendada sem chamá-la.
- Evite desviar para oferta de venda/compra enquanto o agendamento estiver em andamento.

**Informações que você deve coletar:**
1. Tipo de transação desejada (compra, aluguel ou venda)
2. Tipo de imóvel (apartamento, casa, comercial, terreno)
3. Localização/bairro preferido
4. Número mínimo de quartos
5. Faixa de orçamento
6. Prazo para mudança

Responda sempre em português brasileiro de forma natural e amigável.

""" + WHATSAPP_HUMANIZER

NO_PROPERTIES_CONTEXT = (
    "Não há imóveis disponíveis retornados do banco de dados agora. Se o cliente pedir imóveis, "
    "peça cidade/bairro/orçamento/quartos e informe que o consultor irá ajudar."
)

SCHEDULE_VISIT_TOOL = {
    "type": "function",
    "function": {
        "name": "schedule_visit",
        "description": "Cria um rascunho de visita (status scheduled) para um lead e imóvel.",
        "parameters": {
            "type": "object",
            "properties": {
                name: {"type": "string", "description": f.description}
                for name, f in ScheduleVisitArgs.model_fields.items()
            },
            "required": [],
        },
    },
}

ASK_DATETIME_GUIDE = (
    "Para eu registrar a visita, me confirme a data e a hora (ex: 'dia 24 às 17h' ou '24/01 às 17:00')."
)
ASK_PROPERTY_GUIDE = (
    "Consigo agendar sim — mas preciso identificar o imóvel certinho. Pode me enviar o "
    "*endereço completo* (rua, número, bairro e cidade)? Se souber, mande também o *código do imóvel*."
)


def _money(value) -> str:
    return "-" if value is None else f"R$ {float(value):,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")


def format_property_context(properties: list) -> str:
    """Render grounding data with every attribute the agent may quote."""
    if not properties:
        return NO_PROPERTIES_CONTEXT

    blocks = []
    for p in properties:
        images = [i for i in (p.images or []) if i][:5]
        zipcode = f", CEP {p.address_zipcode}" if p.address_zipcode else ""
        blocks.append("\n".join([
            f"ID: {p.id}",
            f"Título: {p.title}",
            f"Código: {p.code}",
            f"Endereço: {format_address(p)}{zipcode}",
            f"Quartos: {p.bedrooms} | Banheiros: {p.bathrooms} | Vagas: {p.parking_spots or 0}",
            f"Área total: {p.area_total or '-'} m²",
            f"Aluguel: {_money(p.rent_price)} | Venda: {_money(p.sale_price)} | Condomínio: {_money(p.condominium_fee)}",
            f"Descrição: {p.description or ''}",
            f"Capa: {p.cover_image_url or ''}",
            f"Fotos: {', '.join(images)}",
        ]))

    return (
        f"Abaixo estão até {len(properties)} imóveis disponíveis (dados reais do banco). "
        "Use APENAS estes dados para apresentar imóveis ao cliente. Se o cliente pedir algo que "
        "não está aqui, peça os filtros (cidade/bairro/orçamento/quartos) e diga que o consultor complementa."
        "\n\n" + "\n\n---\n\n".join(blocks)
    )


async def load_history(db: AsyncSession, conversation_id, limit: Optional[int] = None) -> list[dict]:
    """The most recent messages, oldest first, as chat roles."""
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit or get_settings().ai_history_limit)
    )
    rows = list(result.scalars().all())
    rows.reverse()

    history = []
    for msg in rows:
        content = msg.content or msg.transcription or ""
        if not content:
            continue
        history.append({
            "role": "user" if msg.direction == "inbound" else "assistant",
            "content": content,
        })
    return history


def _parse_tool_args(tool_calls: list[dict]) -> Optional[ScheduleVisitArgs]:
    for call in tool_calls:
        if call.get("name") != "schedule_visit":
            continue
        arguments = {k: str(v) for k, v in (call.get("arguments") or {}).items() if v is not None}
        try:
            return ScheduleVisitArgs.model_validate(arguments)
        except ValidationError as e:
            logger.warning("schedule_visit arguments rejected: %d errors", e.error_count())
            return ScheduleVisitArgs()
    return None


async def run_visit_agent(
    db: AsyncSession,
    conversation: Conversation,
    text: str,
) -> AgentReply:
    """
    Ask the model for a reply. Raises the AI service errors untouched so the
    conductor can tell rate limits from other failures.
    """
    properties = await list_available_properties(db)
    history = await load_history(db, conversation.id)
    if text and not any(m["role"] == "user" and m["content"] == text for m in history):
        history.append({"role": "user", "content": text})

    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "system", "content": format_property_context(properties)},
        *history,
    ]
    logger.info(
        "Visit agent called: history_len=%d grounding=%d", len(history), len(properties),
        extra={"conversation_id": str(conversation.id)},
    )

    result = await generate_with_tools(messages, [SCHEDULE_VISIT_TOOL])

    return AgentReply(
        message=result.get("content", ""),
        tool_call=_parse_tool_args(result.get("tool_calls") or []),
        tool_calls=result.get("tool_calls") or [],
        provider=result.get("provider", "none"),
        model=result.get("model", "none"),
        input_tokens=result.get("input_tokens", 0),
        output_tokens=result.get("output_tokens", 0),
        cost_usd=result.get("cost_usd", 0.0),
        latency_ms=result.get("latency_ms"),
    )


def _parse_tool_datetime(args: ScheduleVisitArgs, now: datetime, tz: tzinfo) -> Optional[datetime]:
    iso = (args.scheduled_at_iso or "").strip()
    if iso:
        try:
            return ensure_aware(datetime.fromisoformat(iso), tz)
        except ValueError:
            logger.info("Unparseable scheduled_at_iso from model, trying text")
    return parse_datetime(args.scheduled_at_text, now, tz)


async def slots_from_tool_args(
    db: AsyncSession,
    args: ScheduleVisitArgs,
    now: datetime,
    tz: tzinfo,
) -> SlotUpdate:
    """Translate a schedule_visit call into the state machine's input."""
    settings = get_settings()
    resolution = await resolve_property(
        db,
        property_id=args.property_id,
        code=args.property_code,
        address=args.property_address,
    )
    return SlotUpdate(
        scheduled_at=_parse_tool_datetime(args, now, tz),
        property_match=resolution,
        notes=(args.notes or "").strip() or None,
        timezone_name=canonical_timezone_name(args.timezone, settings.default_timezone),
    )


def guided_reply(update: SlotUpdate) -> str:
    """Reply for a tool call the state machine could not use."""
    if update.scheduled_at is None:
        return ASK_DATETIME_GUIDE
    return ASK_PROPERTY_GUIDE
