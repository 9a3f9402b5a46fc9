"""
Message model - immutable log of every WhatsApp message in a conversation.
Only status and transcription fields are updated after insert.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class Message(Base):
    __tablename__ = "whatsapp_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("whatsapp_conversations.id", ondelete="CASCADE"), nullable=False
    )
    # Provider message id (unique when present - second line of webhook dedup)
    message_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)

    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # inbound, outbound
    content: Mapped[Optional[str]] = mapped_column(Text)
    media_type: Mapped[Optional[str]] = mapped_column(
        String(20)
    )  # image, audio, video, document
    media_url: Mapped[Optional[str]] = mapped_column(Text)

    status: Mapped[str] = mapped_column(
        String(20), default="sent"
    )  # received, sent, delivered, read, failed

    # AI attribution
    ai_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ai_response: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    # Inbound audio transcription
    transcription: Mapped[Optional[str]] = mapped_column(Text)
    transcription_status: Mapped[Optional[str]] = mapped_column(
        String(10)
    )  # pending, done, error
    transcription_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_whatsapp_messages_conversation_id", "conversation_id"),
        Index("ix_whatsapp_messages_created_at", "created_at"),
        Index("ix_whatsapp_messages_transcription_status", "transcription_status"),
    )

    def __repr__(self) -> str:
        return f"<Message {self.direction} media={self.media_type}>"
