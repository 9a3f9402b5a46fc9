"""Staff console HTTP client tests over httpx.MockTransport."""
import json

import httpx
import pytest

from src.client.api import WhatsappApiClient, WhatsappApiError, parse_sse_event

BASE = "http://visitflow.test"


def _client(handler) -> WhatsappApiClient:
    http = httpx.AsyncClient(base_url=BASE, transport=httpx.MockTransport(handler))
    return WhatsappApiClient(BASE, "staff-secret", client=http)


class TestRequests:
    async def test_list_conversations_sends_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"conversations": [{"id": "c1"}]})

        api = _client(handler)
        assert await api.list_conversations() == [{"id": "c1"}]
        assert seen[0].url.path == "/api/v1/whatsapp/conversations"
        assert seen[0].headers["X-Staff-Token"] == "staff-secret"

    async def test_send_and_automation_bodies(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content or b"{}")))
            return httpx.Response(200, json={"id": "m1"})

        api = _client(handler)
        await api.send_message("c1", "Olá")
        await api.set_automation("c1", False)
        assert seen == [
            ("POST", "/api/v1/whatsapp/conversations/c1/messages", {"content": "Olá"}),
            ("PUT", "/api/v1/whatsapp/conversations/c1/automation", {"enabled": False}),
        ]

    async def test_error_status_raises(self):
        api = _client(lambda request: httpx.Response(502, json={"detail": "WhatsApp send failed"}))
        with pytest.raises(WhatsappApiError) as exc_info:
            await api.send_message("c1", "Olá")
        assert exc_info.value.status_code == 502


class TestEventStream:
    async def test_parses_events_and_skips_comments(self):
        body = (
            ": connected\n\n"
            "event: message_inserted\n"
            'data: {"id": "m1", "conversation_id": "c1"}\n\n'
            "event: conversation_changed\n"
            "data: not-json\n\n"
            "event: conversation_changed\n"
            'data: {"id": "c1"}\n\n'
        )
        api = _client(lambda request: httpx.Response(
            200, content=body.encode(), headers={"content-type": "text/event-stream"},
        ))
        events = [event async for event in api.stream_events()]
        assert events == [
            {"type": "message_inserted", "data": {"id": "m1", "conversation_id": "c1"}},
            {"type": "conversation_changed", "data": {"id": "c1"}},
        ]

    async def test_unauthorized_stream(self):
        api = _client(lambda request: httpx.Response(401))
        with pytest.raises(WhatsappApiError):
            async for _ in api.stream_events():
                pass

    def test_parse_requires_type_and_data(self):
        assert parse_sse_event(None, ['{"a": 1}']) is None
        assert parse_sse_event("x", []) is None
        assert parse_sse_event("x", ["[1, 2]"]) == {"type": "x", "data": {}}
