"""
Audio transcription - ElevenLabs speech-to-text for inbound WhatsApp voice notes.
Downloads the audio, forwards it as multipart form data, returns plain text.
Failures are recorded on the message row (transcription_status='error');
the dialogue never blocks on them.
"""
import logging
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.message import Message
from src.services.normalizer import safe_media_url

logger = logging.getLogger(__name__)

MAX_AUDIO_BYTES = 25 * 1024 * 1024  # 25 MB
MAX_ERROR_CHARS = 500

AUDIO_FILENAMES = {
    "audio/ogg": "audio.ogg",
    "audio/mpeg": "audio.mp3",
    "audio/mp4": "audio.m4a",
    "audio/wav": "audio.wav",
    "audio/webm": "audio.webm",
}


class TranscriptionError(Exception):
    """Audio could not be downloaded or transcribed."""
    pass


def filename_for_content_type(content_type: Optional[str]) -> str:
    ct = (content_type or "").lower()
    for prefix, name in AUDIO_FILENAMES.items():
        if prefix in ct:
            return name
    return "audio"


async def transcribe_audio(
    audio_url: str,
    language_code: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    Download audio_url and return its transcription.

    Raises:
        TranscriptionError: unsafe URL, download/STT failure, or empty result
    """
    from src.config import get_settings
    settings = get_settings()

    url = safe_media_url(audio_url)
    if url is None:
        raise TranscriptionError("Invalid audio URL")
    if not settings.elevenlabs_api_key:
        raise TranscriptionError("ElevenLabs API key not configured")

    language = (language_code or settings.transcription_language)[:16]

    if client is not None:
        return await _transcribe(client, url, language)
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(settings.transcription_timeout_seconds),
        follow_redirects=True,
    ) as http:
        return await _transcribe(http, url, language)


async def _transcribe(client: httpx.AsyncClient, url: str, language: str) -> str:
    from src.config import get_settings
    settings = get_settings()

    try:
        audio = await client.get(url)
    except httpx.HTTPError as e:
        raise TranscriptionError(f"Audio download failed: {e}") from e
    if audio.status_code >= 400:
        raise TranscriptionError(f"Audio download returned {audio.status_code}")
    if len(audio.content) > MAX_AUDIO_BYTES:
        raise TranscriptionError(f"Audio too large ({len(audio.content)} bytes)")

    content_type = audio.headers.get("content-type") or "application/octet-stream"
    logger.info("Audio downloaded: bytes=%d content_type=%s", len(audio.content), content_type)

    try:
        response = await client.post(
            settings.elevenlabs_stt_url,
            headers={"xi-api-key": settings.elevenlabs_api_key},
            data={
                "model_id": settings.transcription_model,
                "language_code": language,
                "tag_audio_events": "false",
                "diarize": "false",
            },
            files={"file": (filename_for_content_type(content_type), audio.content, content_type)},
        )
    except httpx.HTTPError as e:
        raise TranscriptionError(f"Speech-to-text request failed: {e}") from e

    if response.status_code >= 400:
        raise TranscriptionError(f"Speech-to-text returned {response.status_code}")
    try:
        data = response.json()
    except ValueError as e:
        raise TranscriptionError("Speech-to-text returned invalid JSON") from e

    text = data.get("text") if isinstance(data, dict) else None
    if not isinstance(text, str) or not text.strip():
        raise TranscriptionError("Empty transcription")
    return text.strip()


async def transcribe_message(
    db: AsyncSession,
    message: Message,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[str]:
    """
    Transcribe an inbound audio message and record the outcome on the row.
    Returns the text, or None when transcription failed.
    """
    message.transcription_status = "pending"
    try:
        text = await transcribe_audio(message.media_url, client=client)
    except TranscriptionError as e:
        logger.warning(
            "Transcription failed: %s", str(e),
            extra={"conversation_id": str(message.conversation_id), "message_id": message.message_id},
        )
        message.transcription_status = "error"
        message.transcription_error = str(e)[:MAX_ERROR_CHARS]
        await db.flush()
        return None

    message.transcription = text
    message.transcription_status = "done"
    message.transcription_error = None
    await db.flush()
    logger.info(
        "Transcription done: text_len=%d", len(text),
        extra={"conversation_id": str(message.conversation_id), "message_id": message.message_id},
    )
    return text
