"""
Staff console HTTP client - wraps the /api/v1/whatsapp endpoints and reads
the Server-Sent Events stream.
"""
import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/whatsapp"


class WhatsappApiError(Exception):
    """Staff API answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class WhatsappApiClient:
    def __init__(
        self,
        base_url: str,
        staff_token: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = {"X-Staff-Token": staff_token}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._client.request(
            method, f"{API_PREFIX}{path}", headers=self._headers, **kwargs,
        )
        if response.status_code >= 400:
            raise WhatsappApiError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def list_conversations(self) -> list[dict]:
        data = await self._request("GET", "/conversations")
        return data.get("conversations", [])

    async def list_messages(self, conversation_id: str) -> list[dict]:
        data = await self._request("GET", f"/conversations/{conversation_id}/messages")
        return data.get("messages", [])

    async def send_message(self, conversation_id: str, content: str) -> dict:
        return await self._request(
            "POST", f"/conversations/{conversation_id}/messages", json={"content": content},
        )

    async def mark_read(self, conversation_id: str) -> None:
        await self._request("POST", f"/conversations/{conversation_id}/read")

    async def set_automation(self, conversation_id: str, enabled: bool) -> dict:
        return await self._request(
            "PUT", f"/conversations/{conversation_id}/automation", json={"enabled": enabled},
        )

    async def stream_events(self) -> AsyncIterator[dict]:
        """
        Yield {"type", "data"} events until the server closes the stream.
        Comment lines (keep-alives) and malformed payloads are skipped.
        """
        async with self._client.stream(
            "GET", f"{API_PREFIX}/events", headers=self._headers, timeout=None,
        ) as response:
            if response.status_code >= 400:
                raise WhatsappApiError(
                    f"GET /events returned {response.status_code}",
                    status_code=response.status_code,
                )
            event_type: Optional[str] = None
            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if line == "":
                    event = parse_sse_event(event_type, data_lines)
                    if event is not None:
                        yield event
                    event_type, data_lines = None, []
                elif line.startswith(":"):
                    continue
                elif line.startswith("event:"):
                    event_type = line[6:].strip()
                elif line.startswith("data:"):
                    data_lines.append(line[5:].strip())


def parse_sse_event(event_type: Optional[str], data_lines: list[str]) -> Optional[dict]:
    if not event_type or not data_lines:
        return None
    try:
        data = json.loads("\n".join(data_lines))
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE payload for %s", event_type)
        return None
    return {"type": event_type, "data": data if isinstance(data, dict) else {}}
