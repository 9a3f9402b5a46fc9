"""
WhatsApp phone normalization.
Z-API addresses chats as "<digits>@c.us" (person) or "<digits>@g.us" (group).
Only person chats with 10-15 digits are accepted.
"""
import re
from typing import Optional

_DIGITS_ONLY = re.compile(r"\D")
_CHAT_SUFFIX = re.compile(r"@[cg]\.us$")

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15


def is_group_chat_id(raw: str) -> bool:
    """Group chat ids end with @g.us (and often contain a dash)."""
    return raw.strip().endswith("@g.us")


def strip_chat_suffix(raw: str) -> str:
    """'5511999990000@c.us' -> '5511999990000'."""
    return _CHAT_SUFFIX.sub("", raw.strip())


def normalize_whatsapp_phone(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a provider phone/chat id to digits only.

    Returns None for group chats, foreign formats, or lengths outside 10-15.
    """
    if not raw or not isinstance(raw, str) or not raw.strip():
        return None
    if is_group_chat_id(raw):
        return None

    stripped = strip_chat_suffix(raw)
    # Anything other than digits and common separators is a foreign format
    if re.search(r"[^\d+\-\s().]", stripped):
        return None

    digits = _DIGITS_ONLY.sub("", stripped)
    if not (MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS):
        return None
    return digits


def mask_phone(phone: str) -> str:
    """Mask phone number for logging - show first 6 digits only."""
    if phone and len(phone) > 6:
        return phone[:6] + "***"
    return phone or ""
