"""
Agent response schemas - structured output from the AI fallback agent.
"""
from typing import Optional
from pydantic import BaseModel, Field


class ScheduleVisitArgs(BaseModel):
    """
    Arguments of the schedule_visit tool. Every field is optional; the
    scheduling state machine decides what the call actually achieves.
    """
    property_id: Optional[str] = Field(default=None, description="UUID do imóvel (ID: ... do contexto de imóveis)")
    property_code: Optional[str] = Field(default=None, description="Código do imóvel (Código: ... do contexto de imóveis)")
    property_address: Optional[str] = Field(
        default=None,
        description="Endereço do imóvel (rua, número, bairro e cidade). Use quando o cliente não souber o código.",
    )
    scheduled_at_iso: Optional[str] = Field(
        default=None,
        description="Data/hora em ISO-8601 com offset (ex: 2026-01-20T14:00:00-03:00).",
    )
    scheduled_at_text: Optional[str] = Field(
        default=None,
        description="Data/hora em texto (ex: 'dia 24 às 17h'). Se informado, o backend converte para ISO assumindo Horário de Brasília.",
    )
    timezone: Optional[str] = Field(
        default=None,
        description="Fuso horário do cliente (ex: 'Horário de Brasília' / 'America/Sao_Paulo'). Se não for informado, assuma Horário de Brasília.",
    )
    notes: Optional[str] = Field(default=None, description="Observações opcionais do cliente (ex: 'prefere tarde').")


class AgentReply(BaseModel):
    """Response from the visit agent - plain text and/or one schedule_visit request."""
    message: str = Field(default="", description="The WhatsApp text the model wrote")
    tool_call: Optional[ScheduleVisitArgs] = None
    tool_calls: list[dict] = Field(default_factory=list, description="Raw tool calls for audit")
    provider: str = "none"
    model: str = "none"
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    latency_ms: Optional[int] = None
