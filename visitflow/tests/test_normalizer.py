"""
Tests for the Z-API inbound normalizer and phone helpers.
"""
import pytest

from src.services.normalizer import normalize_inbound, normalize_status, safe_media_url
from src.utils.phone import mask_phone, normalize_whatsapp_phone


def _payload(**overrides) -> dict:
    base = {
        "phone": "5511987654321",
        "chatName": "Ana",
        "messageId": "3EB0ABC",
        "fromMe": False,
        "isGroup": False,
        "text": {"message": "Oi, quero visitar um imóvel"},
    }
    base.update(overrides)
    return base


class TestPhone:
    @pytest.mark.parametrize("raw,expected", [
        ("5511987654321", "5511987654321"),
        ("5511987654321@c.us", "5511987654321"),
        ("+55 (11) 98765-4321", "5511987654321"),
    ])
    def test_normalizes_to_digits(self, raw, expected):
        assert normalize_whatsapp_phone(raw) == expected

    @pytest.mark.parametrize("raw", [
        None,
        "",
        "120363025@g.us",
        "123456789",
        "1234567890123456",
        "lid:abc123",
    ])
    def test_rejects(self, raw):
        assert normalize_whatsapp_phone(raw) is None

    def test_mask(self):
        assert mask_phone("5511987654321") == "551198***"


class TestNormalizeInbound:
    def test_text_message(self):
        msg = normalize_inbound(_payload())
        assert msg.phone == "5511987654321"
        assert msg.whatsapp_id == "5511987654321"
        assert msg.display_name == "Ana"
        assert msg.body.kind == "text"
        assert msg.text == "Oi, quero visitar um imóvel"
        assert msg.media_type is None
        assert msg.message_id == "3EB0ABC"
        assert msg.from_me is False

    def test_chat_suffix_yields_same_whatsapp_id(self):
        bare = normalize_inbound(_payload())
        suffixed = normalize_inbound(_payload(phone="5511987654321@c.us"))
        assert suffixed.phone == bare.phone
        assert suffixed.whatsapp_id == bare.whatsapp_id == "5511987654321"

    def test_plain_string_text(self):
        msg = normalize_inbound(_payload(text="  olá  "))
        assert msg.text == "olá"

    def test_sender_name_fallback(self):
        msg = normalize_inbound(_payload(chatName=None, senderName="Ana Paula"))
        assert msg.display_name == "Ana Paula"

    def test_group_flag_dropped(self):
        assert normalize_inbound(_payload(isGroup=True)) is None

    def test_group_chat_id_dropped(self):
        assert normalize_inbound(_payload(phone="120363025-1@g.us")) is None

    def test_bad_phone_dropped(self):
        assert normalize_inbound(_payload(phone="12345")) is None

    def test_empty_text_dropped(self):
        assert normalize_inbound(_payload(text={"message": "   "})) is None

    def test_not_a_dict(self):
        assert normalize_inbound(["phone"]) is None
        assert normalize_inbound(None) is None

    def test_malformed_dropped(self):
        assert normalize_inbound(_payload(fromMe={"nested": True})) is None

    def test_audio_without_text_is_kept(self):
        msg = normalize_inbound(_payload(
            text=None,
            audio={"audioUrl": "https://cdn.z-api.io/audio.ogg", "mimeType": "audio/ogg"},
        ))
        assert msg.body.kind == "audio"
        assert msg.media_type == "audio"
        assert msg.media_url == "https://cdn.z-api.io/audio.ogg"
        assert msg.text == ""

    def test_image_caption_becomes_text(self):
        msg = normalize_inbound(_payload(
            text=None,
            image={"imageUrl": "https://cdn.z-api.io/img.jpg", "caption": "essa fachada"},
        ))
        assert msg.media_type == "image"
        assert msg.text == "essa fachada"

    def test_unsafe_media_url_dropped_message_kept(self):
        msg = normalize_inbound(_payload(
            text=None,
            document={"documentUrl": "javascript:alert(1)", "fileName": "planta.pdf"},
        ))
        assert msg.media_type == "document"
        assert msg.media_url is None
        assert msg.body.file_name == "planta.pdf"

    def test_text_is_capped(self):
        msg = normalize_inbound(_payload(text={"message": "a" * 5000}))
        assert len(msg.text) == 2000

    def test_from_me(self):
        msg = normalize_inbound(_payload(fromMe=True))
        assert msg.from_me is True

    def test_blank_message_id_becomes_none(self):
        msg = normalize_inbound(_payload(messageId="  "))
        assert msg.message_id is None


class TestSafeMediaUrl:
    @pytest.mark.parametrize("url", [
        "ftp://host/file",
        "/relative/path",
        "https://",
        "https://host/with space",
        "https://host/" + "a" * 3000,
    ])
    def test_rejected(self, url):
        assert safe_media_url(url) is None

    def test_accepted(self):
        assert safe_media_url(" https://cdn.example.com/a.ogg ") == "https://cdn.example.com/a.ogg"


class TestNormalizeStatus:
    def test_ids_list(self):
        update = normalize_status({"ids": ["A", "B"], "status": "READ"})
        assert update.message_ids == ["A", "B"]
        assert update.status == "read"

    def test_single_message_id(self):
        update = normalize_status({"messageId": "A", "status": "RECEIVED"})
        assert update.message_ids == ["A"]
        assert update.status == "delivered"

    def test_played_counts_as_read(self):
        assert normalize_status({"ids": ["A"], "status": "played"}).status == "read"

    def test_unknown_status(self):
        assert normalize_status({"ids": ["A"], "status": "PENDING"}) is None

    def test_no_ids(self):
        assert normalize_status({"status": "READ"}) is None
