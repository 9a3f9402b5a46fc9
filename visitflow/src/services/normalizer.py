"""
Inbound normalizer - turns raw Z-API webhook bodies into InboundMessage.
Pure transform: no I/O, never raises. Anything malformed yields None and
the webhook drops the event (still answering 200).
"""
import logging
from typing import Optional
from urllib.parse import urlsplit

from pydantic import ValidationError

from src.config import get_settings
from src.schemas.webhook_payloads import (
    AudioBody,
    DocumentBody,
    ImageBody,
    InboundMessage,
    MessageStatusUpdate,
    TextBody,
    VideoBody,
    ZapiMessagePayload,
    ZapiStatusPayload,
    ZapiText,
)
from src.utils.phone import is_group_chat_id, normalize_whatsapp_phone

logger = logging.getLogger(__name__)

MAX_MEDIA_URL_LENGTH = 2048
MAX_DISPLAY_NAME_LENGTH = 150

# Z-API status -> whatsapp_messages.status
STATUS_MAP = {
    "SENT": "sent",
    "RECEIVED": "delivered",
    "DELIVERED": "delivered",
    "READ": "read",
    "READ_BY_ME": "read",
    "PLAYED": "read",
    "FAILED": "failed",
}


def safe_media_url(url: Optional[str]) -> Optional[str]:
    """Keep only absolute http(s) URLs with a host; anything else becomes None."""
    if not url or not isinstance(url, str):
        return None
    url = url.strip()
    if not url or len(url) > MAX_MEDIA_URL_LENGTH or any(c.isspace() for c in url):
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return None
    return url


def _extract_text(raw: ZapiMessagePayload) -> str:
    if isinstance(raw.text, ZapiText):
        value = raw.text.message or ""
    else:
        value = raw.text or ""
    return value.strip()[:get_settings().max_message_chars]


def _build_body(raw: ZapiMessagePayload, text: str):
    """First attachment present wins; captions stand in for empty text."""
    if raw.image is not None:
        return ImageBody(
            text=text or (raw.image.caption or "").strip(),
            media_url=safe_media_url(raw.image.imageUrl or raw.image.url),
        )
    if raw.audio is not None:
        return AudioBody(text=text, media_url=safe_media_url(raw.audio.audioUrl or raw.audio.url))
    if raw.video is not None:
        return VideoBody(
            text=text or (raw.video.caption or "").strip(),
            media_url=safe_media_url(raw.video.videoUrl or raw.video.url),
        )
    if raw.document is not None:
        return DocumentBody(
            text=text,
            media_url=safe_media_url(raw.document.documentUrl or raw.document.url),
            file_name=raw.document.fileName,
        )
    return TextBody(text=text)


def normalize_inbound(payload) -> Optional[InboundMessage]:
    """
    Validate and canonicalize a Z-API message webhook.

    Returns None for group chats, malformed phones, or payloads that do not
    parse. A bad media URL only drops the URL, never the message.
    """
    if not isinstance(payload, dict):
        return None
    try:
        raw = ZapiMessagePayload.model_validate(payload)
    except ValidationError as e:
        logger.info("Dropping malformed webhook payload: %d validation errors", e.error_count())
        return None

    if not raw.phone or raw.isGroup or is_group_chat_id(raw.phone):
        return None
    phone = normalize_whatsapp_phone(raw.phone)
    if phone is None:
        return None

    text = _extract_text(raw)
    body = _build_body(raw, text)
    if body.kind == "text" and not body.text:
        return None

    display_name = (raw.chatName or raw.senderName or "").strip()[:MAX_DISPLAY_NAME_LENGTH] or None

    return InboundMessage(
        phone=phone,
        whatsapp_id=phone,
        display_name=display_name,
        body=body,
        from_me=raw.fromMe,
        message_id=(raw.messageId or "").strip() or None,
        is_group=False,
    )


def normalize_status(payload) -> Optional[MessageStatusUpdate]:
    """Canonicalize a message-status callback; unknown statuses are ignored."""
    if not isinstance(payload, dict):
        return None
    try:
        raw = ZapiStatusPayload.model_validate(payload)
    except ValidationError:
        return None

    ids = [i for i in (raw.ids or []) if i] or ([raw.messageId] if raw.messageId else [])
    status = STATUS_MAP.get((raw.status or "").upper())
    if not ids or status is None:
        return None
    return MessageStatusUpdate(message_ids=ids, status=status)
