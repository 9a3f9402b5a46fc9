"""
API response schemas for the webhook and the staff conversation console.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    status: str
    detail: Optional[str] = None


class ConversationSummary(BaseModel):
    id: str
    phone: str
    display_name: Optional[str] = None
    lead_id: Optional[str] = None
    lead_name: Optional[str] = None
    automation_enabled: bool = True
    needs_human_followup: bool = False
    pending_visit_step: str = "none"
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0


class ConversationListResponse(BaseModel):
    conversations: list[ConversationSummary]


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    message_id: Optional[str] = None
    direction: str
    content: Optional[str] = None
    media_type: Optional[str] = None
    media_url: Optional[str] = None
    status: str = "sent"
    ai_processed: bool = False
    transcription: Optional[str] = None
    transcription_status: Optional[str] = None
    created_at: datetime


class MessageListResponse(BaseModel):
    messages: list[MessageOut]


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=4096)


class AutomationToggleRequest(BaseModel):
    enabled: bool
