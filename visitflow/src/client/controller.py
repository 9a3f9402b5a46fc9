"""
Realtime conversation controller for the staff console.

Keeps the conversation list and the open conversation's messages consistent
with server push events, with optimistic local echo for staff sends.

Rules:
- messages merge by id; an acknowledged send replaces its temp- echo in place
- events for other conversations only touch list ordering and unread counts
- unread counts grow only for inbound messages on a conversation that is not open
- unknown conversations trigger one debounced list refresh per burst
- periodic polls re-merge server state in case the event stream drops silently

All state lives on the instance and is mutated from the event loop only.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import httpx

from src.client.api import WhatsappApiClient, WhatsappApiError

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"
EVENT_RETRY_SECONDS = 5.0
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _ts(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_temp_id(message_id) -> bool:
    return isinstance(message_id, str) and message_id.startswith(TEMP_PREFIX)


def merge_messages(current: list[dict], incoming: list[dict]) -> list[dict]:
    """
    Merge server messages into the local list without duplicates.
    A new server message with the same content as a pending temp- echo takes
    the echo's place.
    """
    merged = list(current)
    index = {m["id"]: i for i, m in enumerate(merged)}

    for message in incoming:
        mid = message.get("id")
        if mid in index:
            merged[index[mid]] = {**merged[index[mid]], **message}
            continue
        temp_at = next(
            (
                i for i, m in enumerate(merged)
                if is_temp_id(m["id"])
                and m.get("content") == message.get("content")
                and m.get("direction") == message.get("direction", "outbound")
            ),
            None,
        )
        if temp_at is not None:
            del index[merged[temp_at]["id"]]
            merged[temp_at] = message
            index[mid] = temp_at
        else:
            index[mid] = len(merged)
            merged.append(message)

    merged.sort(key=lambda m: _ts(m.get("created_at")))
    return merged


class ConversationController:
    def __init__(
        self,
        api: WhatsappApiClient,
        debounce_seconds: float = 0.05,
        message_poll_seconds: float = 12.0,
        conversation_poll_seconds: float = 30.0,
    ):
        self.api = api
        self.debounce_seconds = debounce_seconds
        self.message_poll_seconds = message_poll_seconds
        self.conversation_poll_seconds = conversation_poll_seconds

        self.conversations: list[dict] = []
        self.messages: list[dict] = []
        self.selected_id: Optional[str] = None

        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._tasks: list[asyncio.Task] = []
        self._closed = False

    # --- lifecycle ---

    async def start(self, stream_events: bool = True) -> "ConversationController":
        self._closed = False
        await self.load_conversations()
        self._tasks.append(asyncio.create_task(self._poll_messages()))
        self._tasks.append(asyncio.create_task(self._poll_conversations()))
        if stream_events:
            self._tasks.append(asyncio.create_task(self._consume_events()))
        return self

    async def close(self) -> None:
        self._closed = True
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        tasks = list(self._tasks)
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._refresh_task = None

    async def __aenter__(self) -> "ConversationController":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --- operations ---

    def _find_conversation(self, conversation_id: Optional[str]) -> Optional[dict]:
        return next((c for c in self.conversations if c["id"] == conversation_id), None)

    def _reorder(self) -> None:
        self.conversations.sort(key=lambda c: _ts(c.get("last_message_at")), reverse=True)

    async def load_conversations(self) -> list[dict]:
        self.conversations = await self.api.list_conversations()
        if self.selected_id:
            selected = self._find_conversation(self.selected_id)
            if selected is not None:
                selected["unread_count"] = 0
        self._reorder()
        return self.conversations

    async def select_conversation(self, conversation_id: str) -> list[dict]:
        self.selected_id = conversation_id
        self.messages = merge_messages([], await self.api.list_messages(conversation_id))
        await self.api.mark_read(conversation_id)
        conversation = self._find_conversation(conversation_id)
        if conversation is not None:
            conversation["unread_count"] = 0
        return self.messages

    async def send_message(self, content: str) -> dict:
        """Optimistic send. On failure the echo is removed and the error re-raised."""
        if not self.selected_id:
            raise ValueError("No conversation selected")
        conversation_id = self.selected_id
        now = datetime.now(timezone.utc).isoformat()
        temp = {
            "id": f"{TEMP_PREFIX}{uuid.uuid4().hex}",
            "conversation_id": conversation_id,
            "direction": "outbound",
            "content": content,
            "status": "sending",
            "created_at": now,
        }
        self.messages.append(temp)
        self._touch_conversation(conversation_id, content, now)

        try:
            ack = await self.api.send_message(conversation_id, content)
        except Exception:
            self.messages = [m for m in self.messages if m["id"] != temp["id"]]
            raise

        if self.selected_id != conversation_id:
            return ack
        ids = [m["id"] for m in self.messages]
        if ack["id"] in ids:
            # The push event won the race and already replaced the echo
            self.messages = [m for m in self.messages if m["id"] != temp["id"]]
        elif temp["id"] in ids:
            self.messages[ids.index(temp["id"])] = ack
        else:
            self.messages = merge_messages(self.messages, [ack])

        # Staff sends switch automation off server-side
        conversation = self._find_conversation(conversation_id)
        if conversation is not None:
            conversation["automation_enabled"] = False
        return ack

    async def toggle_automation(self) -> dict:
        conversation = self._find_conversation(self.selected_id)
        if conversation is None:
            raise ValueError("No conversation selected")
        target = not conversation.get("automation_enabled", True)
        result = await self.api.set_automation(conversation["id"], target)
        conversation["automation_enabled"] = result.get("automation_enabled", target)
        return conversation

    def _touch_conversation(self, conversation_id: str, content: Optional[str], at) -> None:
        conversation = self._find_conversation(conversation_id)
        if conversation is None:
            return
        conversation["last_message"] = content
        conversation["last_message_at"] = at
        self._reorder()

    # --- push events ---

    def handle_event(self, event: dict) -> None:
        event_type = event.get("type")
        data = event.get("data") or {}

        if event_type in ("message_inserted", "message_updated"):
            self._handle_message_event(event_type, data)
        elif event_type == "conversation_changed":
            self._handle_conversation_event(data)

    def _handle_message_event(self, event_type: str, message: dict) -> None:
        conversation_id = message.get("conversation_id")
        if not conversation_id or not message.get("id"):
            return
        conversation = self._find_conversation(conversation_id)
        if conversation is None:
            self._schedule_refresh()
            return

        is_open = conversation_id == self.selected_id
        if event_type == "message_inserted":
            self._touch_conversation(conversation_id, message.get("content"), message.get("created_at"))
            if not is_open and message.get("direction") == "inbound":
                conversation["unread_count"] = conversation.get("unread_count", 0) + 1
        if is_open:
            self.messages = merge_messages(self.messages, [message])

    def _handle_conversation_event(self, data: dict) -> None:
        conversation = self._find_conversation(data.get("id"))
        if conversation is None:
            self._schedule_refresh()
            return
        for key in (
            "display_name", "lead_id", "automation_enabled",
            "needs_human_followup", "pending_visit_step", "last_message_at",
        ):
            if key in data:
                conversation[key] = data[key]
        self._reorder()

    def _schedule_refresh(self) -> None:
        """Collapse a burst of unknown-conversation events into one list refetch."""
        if self._closed:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self.debounce_seconds, self._fire_refresh)

    def _fire_refresh(self) -> None:
        self._debounce_handle = None
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._safe_refresh())

    async def _safe_refresh(self) -> None:
        try:
            await self.load_conversations()
        except (httpx.HTTPError, WhatsappApiError) as e:
            logger.warning("Conversation refresh failed: %s", str(e))

    # --- background loops ---

    async def _poll_messages(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.message_poll_seconds)
            conversation_id = self.selected_id
            if not conversation_id:
                continue
            try:
                incoming = await self.api.list_messages(conversation_id)
            except (httpx.HTTPError, WhatsappApiError) as e:
                logger.warning("Message poll failed: %s", str(e))
                continue
            if conversation_id == self.selected_id:
                self.messages = merge_messages(self.messages, incoming)

    async def _poll_conversations(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.conversation_poll_seconds)
            await self._safe_refresh()

    async def _consume_events(self) -> None:
        while not self._closed:
            try:
                async for event in self.api.stream_events():
                    self.handle_event(event)
            except (httpx.HTTPError, WhatsappApiError) as e:
                logger.warning("Event stream dropped: %s", str(e))
            if not self._closed:
                await asyncio.sleep(EVENT_RETRY_SECONDS)
