"""
Lead model - one customer per WhatsApp phone number.
Created on the first inbound message (name defaults to the phone) and
assigned to a broker lazily, the first time a visit has to be scheduled.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Contact info - phone is the natural key (unique, digits only)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)

    source: Mapped[str] = mapped_column(String(30), default="whatsapp", nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="new", nullable=False)
    priority: Mapped[str] = mapped_column(String(10), default="medium", nullable=False)

    # Owning broker (assigned with a conditional update, never overwritten)
    broker_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("profiles.id")
    )

    # Preferences (enriched later by staff)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    preferred_property_type: Mapped[Optional[str]] = mapped_column(String(30))
    preferred_transaction: Mapped[Optional[str]] = mapped_column(String(20))
    min_budget: Mapped[Optional[float]] = mapped_column(Numeric(15, 2))
    max_budget: Mapped[Optional[float]] = mapped_column(Numeric(15, 2))
    preferred_neighborhoods: Mapped[Optional[list]] = mapped_column(JSONB, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_leads_broker_id", "broker_id"),
        Index("ix_leads_status", "status"),
    )

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<Lead {masked} status={self.status}>"
