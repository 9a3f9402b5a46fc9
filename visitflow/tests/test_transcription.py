"""
Audio transcription tests - download + ElevenLabs STT over httpx.MockTransport.
"""
import uuid
from unittest.mock import MagicMock, patch

import httpx
import pytest

from src.models.message import Message
from src.services.transcription import (
    TranscriptionError,
    filename_for_content_type,
    transcribe_audio,
    transcribe_message,
)

AUDIO_URL = "https://cdn.z-api.io/voice.ogg"
STT_URL = "https://api.elevenlabs.io/v1/speech-to-text"


def _settings(**overrides):
    s = MagicMock()
    s.elevenlabs_api_key = "xi-key"
    s.elevenlabs_stt_url = STT_URL
    s.transcription_model = "scribe_v2"
    s.transcription_language = "por"
    s.transcription_timeout_seconds = 30
    for k, v in overrides.items():
        setattr(s, k, v)
    return s


@pytest.fixture
def settings():
    with patch("src.config.get_settings", return_value=_settings()) as mock:
        yield mock


def _transport(stt_status=200, stt_json=None, audio_status=200, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if request.method == "GET":
            return httpx.Response(audio_status, content=b"OggS-fake", headers={"content-type": "audio/ogg; codecs=opus"})
        return httpx.Response(stt_status, json=stt_json if stt_json is not None else {"text": " quero visitar amanhã às 14h "})
    return httpx.MockTransport(handler)


class TestTranscribeAudio:
    async def test_success(self, settings):
        calls = []
        async with httpx.AsyncClient(transport=_transport(calls=calls)) as client:
            text = await transcribe_audio(AUDIO_URL, client=client)

        assert text == "quero visitar amanhã às 14h"
        download, stt = calls
        assert str(download.url) == AUDIO_URL
        assert str(stt.url) == STT_URL
        assert stt.headers["xi-api-key"] == "xi-key"
        body = stt.content
        assert b'name="model_id"' in body and b"scribe_v2" in body
        assert b'name="language_code"' in body and b"por" in body
        assert b'filename="audio.ogg"' in body

    async def test_unsafe_url(self, settings):
        with pytest.raises(TranscriptionError):
            await transcribe_audio("file:///etc/passwd")

    async def test_missing_key(self):
        with patch("src.config.get_settings", return_value=_settings(elevenlabs_api_key="")):
            with pytest.raises(TranscriptionError):
                await transcribe_audio(AUDIO_URL)

    async def test_download_error(self, settings):
        async with httpx.AsyncClient(transport=_transport(audio_status=404)) as client:
            with pytest.raises(TranscriptionError, match="404"):
                await transcribe_audio(AUDIO_URL, client=client)

    async def test_stt_error(self, settings):
        async with httpx.AsyncClient(transport=_transport(stt_status=500)) as client:
            with pytest.raises(TranscriptionError, match="500"):
                await transcribe_audio(AUDIO_URL, client=client)

    async def test_empty_text(self, settings):
        async with httpx.AsyncClient(transport=_transport(stt_json={"text": "  "})) as client:
            with pytest.raises(TranscriptionError, match="Empty"):
                await transcribe_audio(AUDIO_URL, client=client)


class TestFilename:
    @pytest.mark.parametrize("content_type,expected", [
        ("audio/ogg; codecs=opus", "audio.ogg"),
        ("audio/mpeg", "audio.mp3"),
        ("AUDIO/MP4", "audio.m4a"),
        ("application/octet-stream", "audio"),
        (None, "audio"),
    ])
    def test_mapping(self, content_type, expected):
        assert filename_for_content_type(content_type) == expected


class TestTranscribeMessage:
    async def _message(self, db, conversation) -> Message:
        msg = Message(
            id=uuid.uuid4(), conversation_id=conversation.id, message_id="AUDIO1",
            direction="inbound", media_type="audio", media_url=AUDIO_URL, status="received",
        )
        db.add(msg)
        await db.flush()
        return msg

    async def test_done(self, db, conversation, settings):
        msg = await self._message(db, conversation)
        async with httpx.AsyncClient(transport=_transport()) as client:
            text = await transcribe_message(db, msg, client=client)
        assert text == "quero visitar amanhã às 14h"
        assert msg.transcription == text
        assert msg.transcription_status == "done"
        assert msg.transcription_error is None

    async def test_error_recorded(self, db, conversation, settings):
        msg = await self._message(db, conversation)
        async with httpx.AsyncClient(transport=_transport(stt_status=503)) as client:
            text = await transcribe_message(db, msg, client=client)
        assert text is None
        assert msg.transcription_status == "error"
        assert "503" in msg.transcription_error
        assert msg.transcription is None
