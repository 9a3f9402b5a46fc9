"""
Agent dispatch - runs agent turns in the background so the webhook can
acknowledge Z-API immediately.

Each turn gets its own database session (the webhook's transaction is
already committed). A turn that crashes is logged and its conversation
is flagged for a human; nothing is retried automatically.
"""
import asyncio
import logging
from typing import Optional

from src.database import async_session_factory

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task] = set()


async def _run_agent_turn(conversation_id: str, text: str) -> dict:
    from src.agents.conductor import handle_agent_turn

    async with async_session_factory() as db:
        return await handle_agent_turn(db, conversation_id, text)


def _on_turn_done(conversation_id: str, task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        logger.warning("Agent turn cancelled", extra={"conversation_id": conversation_id})
        return
    error = task.exception()
    if error is None:
        return

    logger.error(
        "Agent turn crashed: %s", str(error),
        exc_info=error,
        extra={"conversation_id": conversation_id},
    )
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    from src.agents.conductor import mark_for_human_followup
    followup = loop.create_task(mark_for_human_followup(conversation_id, "agent_crashed"))
    _pending.add(followup)
    followup.add_done_callback(_pending.discard)


def dispatch_agent_turn(conversation_id: str, text: str) -> asyncio.Task:
    """Schedule an agent turn. Must be called from a running event loop."""
    task = asyncio.create_task(_run_agent_turn(conversation_id, text))
    _pending.add(task)
    task.add_done_callback(lambda t: _on_turn_done(conversation_id, t))
    logger.info("Agent turn dispatched", extra={"conversation_id": conversation_id})
    return task


def pending_count() -> int:
    return len(_pending)


async def drain_pending(timeout: Optional[float] = 10.0) -> int:
    """Wait for in-flight turns (used at shutdown and in tests). Returns how many were awaited."""
    if not _pending:
        return 0
    tasks = list(_pending)
    done, not_done = await asyncio.wait(tasks, timeout=timeout)
    for task in not_done:
        task.cancel()
    if not_done:
        logger.warning("Cancelled %d agent turns still running at drain", len(not_done))
    # Follow-up flags scheduled by crashed turns
    if _pending:
        await asyncio.wait(list(_pending), timeout=timeout)
    return len(done)
