"""
Conversation model - one WhatsApp chat thread per phone.

Besides the chat metadata it carries the scheduling slot set
(pending_visit_*). Only the scheduling state machine writes those columns,
through SchedulingState.apply_to(); CRUD screens must leave them alone.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class Conversation(Base):
    __tablename__ = "whatsapp_conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    whatsapp_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(150))
    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE")
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Human takeover - when automation is off a staff member answers directly
    automation_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    human_takeover_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    needs_human_followup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Scheduling slot set
    pending_visit_step: Mapped[str] = mapped_column(
        String(30), default="none", nullable=False
    )  # none, awaiting_property, awaiting_datetime, awaiting_candidate_choice, awaiting_confirmation
    pending_visit_property_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    pending_visit_scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    pending_visit_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    pending_visit_candidates: Mapped[Optional[list]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_whatsapp_conversations_phone", "phone"),
        Index("ix_whatsapp_conversations_lead_id", "lead_id"),
        Index("ix_whatsapp_conversations_last_message_at", "last_message_at"),
        Index("ix_whatsapp_conversations_pending_visit_step", "pending_visit_step"),
    )

    def __repr__(self) -> str:
        return f"<Conversation {self.phone[:6]}*** step={self.pending_visit_step}>"
