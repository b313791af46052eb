"""
Conversation lifecycle state machine.

    Created --turn--> Active --compression--> Compressed
    Active/Compressed --idle timeout or switch away--> Idle
    Idle/Compressed --turn--> Active

States live in process memory only; on startup a conversation is Created
if it has no turns and Idle otherwise. Leaving Active or Compressed for
Idle enqueues exactly one abbreviation. A second idle signal while
already Idle does nothing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .models import ConversationState
from .notifications import Notifier

if TYPE_CHECKING:
    from .index.store import IndexStore
    from .pipeline import AbbreviationPipeline

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Tracks per-conversation state and owns the idle timers."""

    def __init__(
        self,
        pipeline: AbbreviationPipeline,
        store: IndexStore,
        notifier: Notifier,
        idle_timeout_seconds: float = 600.0,
        naming_first_turn: int = 5,
    ):
        self.pipeline = pipeline
        self.store = store
        self.notifier = notifier
        self.idle_timeout_seconds = idle_timeout_seconds
        self.naming_first_turn = naming_first_turn

        self._states: dict[str, ConversationState] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._idle_tasks: set[asyncio.Task[bool]] = set()
        self._naming_requested: set[str] = set()

    def state(self, conversation_id: str) -> ConversationState | None:
        return self._states.get(conversation_id)

    def restore(self, conversation_id: str, has_turns: bool) -> None:
        """Set the startup state of a known conversation without notifying."""
        self._states[conversation_id] = (
            ConversationState.IDLE if has_turns else ConversationState.CREATED
        )

    async def register(self, conversation_id: str) -> None:
        """Track a newly created conversation."""
        await self._transition(conversation_id, ConversationState.CREATED)

    # =========================================================================
    # Signals
    # =========================================================================

    async def on_turn(self, conversation_id: str, turn_count: int) -> None:
        """A turn was appended: become Active and restart the idle timer."""
        await self._transition(conversation_id, ConversationState.ACTIVE)
        self._reset_timer(conversation_id)

        if turn_count >= self.naming_first_turn and conversation_id not in self._naming_requested:
            conversation = await self.store.get_conversation(conversation_id)
            if conversation is not None and not conversation.title and not conversation.manually_named:
                self._naming_requested.add(conversation_id)
                self.pipeline.enqueue_naming(conversation_id)

    async def on_compression(self, conversation_id: str) -> None:
        await self._transition(conversation_id, ConversationState.COMPRESSED)

    async def on_idle(self, conversation_id: str) -> bool:
        """Idle timeout fired.

        Returns:
            True if this call moved the conversation to Idle and enqueued an
            abbreviation.
        """
        self._cancel_timer(conversation_id)
        current = self._states.get(conversation_id)
        if current not in (ConversationState.ACTIVE, ConversationState.COMPRESSED):
            return False

        await self._transition(conversation_id, ConversationState.IDLE)
        self.pipeline.enqueue(conversation_id)
        return True

    async def switch_away(self, conversation_id: str) -> bool:
        """The user moved to another conversation; same effect as an idle timeout."""
        return await self.on_idle(conversation_id)

    async def shutdown(self) -> None:
        """Cancel every idle timer and pending idle callback."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        tasks = list(self._idle_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._idle_tasks.clear()

    # =========================================================================
    # Internals
    # =========================================================================

    async def _transition(self, conversation_id: str, new: ConversationState) -> None:
        old = self._states.get(conversation_id)
        if old is new:
            return
        self._states[conversation_id] = new
        logger.debug(
            "Conversation %s: %s -> %s",
            conversation_id,
            old.value if old else None,
            new.value,
        )
        await self.notifier.state_changed(conversation_id, old.value if old else None, new.value)

    def _reset_timer(self, conversation_id: str) -> None:
        self._cancel_timer(conversation_id)
        loop = asyncio.get_running_loop()
        self._timers[conversation_id] = loop.call_later(
            self.idle_timeout_seconds, self._fire_idle, conversation_id
        )

    def _cancel_timer(self, conversation_id: str) -> None:
        handle = self._timers.pop(conversation_id, None)
        if handle is not None:
            handle.cancel()

    def _fire_idle(self, conversation_id: str) -> None:
        self._timers.pop(conversation_id, None)
        task = asyncio.create_task(self.on_idle(conversation_id))
        self._idle_tasks.add(task)
        task.add_done_callback(self._idle_tasks.discard)
