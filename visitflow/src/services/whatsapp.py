"""
WhatsApp service - outbound text via Z-API.
One send per agent turn, no automatic retries: a failed send is recorded on
the message row and left to the staff console.
"""
import logging
from typing import Optional

import httpx

from src.utils.phone import mask_phone

logger = logging.getLogger(__name__)

# WhatsApp hard limit for a single text message
MAX_WHATSAPP_CHARS = 4096


class WhatsappSendError(Exception):
    """Z-API rejected the send or is not configured."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _send_text_url() -> str:
    from src.config import get_settings
    settings = get_settings()
    if not settings.zapi_instance_id or not settings.zapi_token:
        raise WhatsappSendError("Z-API instance not configured")
    base = settings.zapi_base_url.rstrip("/")
    return f"{base}/instances/{settings.zapi_instance_id}/token/{settings.zapi_token}/send-text"


async def send_text(
    phone: str,
    message: str,
    client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """
    Send a WhatsApp text message.

    Returns: {
        "status": "sent"|"failed", "message_id": str|None,
        "provider": "zapi", "error": str|None,
    }
    """
    masked = mask_phone(phone)
    body = message[:MAX_WHATSAPP_CHARS]

    try:
        result = await _send_zapi(phone, body, client)
    except (WhatsappSendError, httpx.HTTPError) as e:
        error_code = getattr(e, "status_code", None)
        logger.error(
            "WhatsApp send failed for %s: %s", masked, str(e),
            extra={"phone": masked, "provider": "zapi", "error_code": error_code},
        )
        return {
            "status": "failed",
            "message_id": None,
            "provider": "zapi",
            "error": str(e),
        }

    logger.info(
        "WhatsApp sent to %s: %s", masked, result.get("message_id") or "no-id",
        extra={"phone": masked, "provider": "zapi", "message_id": result.get("message_id")},
    )
    return {
        "status": "sent",
        "message_id": result.get("message_id"),
        "provider": "zapi",
        "error": None,
    }


async def _send_zapi(phone: str, body: str, client: Optional[httpx.AsyncClient] = None) -> dict:
    """POST /send-text. Raises WhatsappSendError on non-2xx."""
    from src.config import get_settings
    settings = get_settings()
    url = _send_text_url()
    headers = {
        "Content-Type": "application/json",
        "Client-Token": settings.zapi_security_token,
    }
    payload = {"phone": phone, "message": body}

    if client is not None:
        response = await client.post(url, headers=headers, json=payload)
    else:
        async with httpx.AsyncClient(timeout=httpx.Timeout(settings.zapi_timeout_seconds)) as http:
            response = await http.post(url, headers=headers, json=payload)

    if response.status_code >= 400:
        raise WhatsappSendError(
            f"Z-API send-text returned {response.status_code}",
            status_code=response.status_code,
        )
    try:
        data = response.json()
    except ValueError:
        data = {}
    return {"message_id": data.get("messageId") or data.get("id")}
