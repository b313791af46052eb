"""
Working-context hydration.

Builds the bounded view of a conversation handed to the conversational
engine: the most recent turns, plus the summary of the latest compression
that happened within that window. The result lives in memory only and
can be rebuilt from the transcript at any time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from . import tokens
from .config import MemoryConfig
from .exceptions import ConversationNotFoundError, ValidationError
from .index.store import IndexStore
from .models import EventType, TranscriptEvent, TranscriptTurn, utc_now
from .transcript import TranscriptLog

logger = logging.getLogger(__name__)

MESSAGE_PREVIEW_CHARS = 500


def format_time_gap(seconds: float) -> str:
    """Human-readable gap such as "3 hours" or "a few seconds"."""
    minutes = int(seconds // 60)
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days} day{'s' if days > 1 else ''}"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''}"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    return "a few seconds"


@dataclass
class WorkingContext:
    """Recent history of a conversation, ready for prompt injection."""

    conversation_id: str
    turns: list[TranscriptTurn] = field(default_factory=list)
    summary: str | None = None  # latest compression summary within the window
    compressed_through: int | None = None
    abbreviation: str | None = None
    title: str | None = None
    last_activity: datetime | None = None

    def render(self, now: datetime | None = None) -> str:
        """Render the context as a prior-conversation block.

        The compression summary is preferred over the abbreviation since it
        is the engine's own account of the turns that were dropped.
        """
        now = now or utc_now()
        gap = (now - self.last_activity).total_seconds() if self.last_activity else 0.0
        lines = [f"[Prior conversation - {format_time_gap(gap)} ago]"]

        summary = self.summary or self.abbreviation
        if summary:
            lines.append(f"Summary: {summary}")
            lines.append("")

        if self.turns:
            lines.append("Recent messages:")
            for turn in self.turns:
                content = turn.content
                if len(content) > MESSAGE_PREVIEW_CHARS:
                    content = content[:MESSAGE_PREVIEW_CHARS] + "..."
                lines.append(f"{turn.role.label}: {content}")

        lines.append("[End prior conversation]")
        return "\n".join(lines) + "\n"


class ContextHydrator:
    """Builds WorkingContext objects from transcripts."""

    def __init__(self, log: TranscriptLog, store: IndexStore, config: MemoryConfig):
        self.log = log
        self.store = store
        self.config = config

    async def hydrate(
        self,
        conversation_id: str,
        max_turns: int | None = None,
        max_tokens: int | None = None,
    ) -> WorkingContext:
        """Read the tail of a transcript into a WorkingContext.

        Args:
            conversation_id: Conversation to hydrate
            max_turns: Most recent turn numbers to include (default from config).
                0 leaves out turns, keeping only title and abbreviation
            max_tokens: Token budget for turn text; the newest turn is always kept

        Raises:
            ConversationNotFoundError: If there is no transcript
            ValidationError: If max_turns is negative
        """
        if max_turns is None:
            max_turns = self.config.hydrate_max_turns
        if max_turns < 0:
            raise ValidationError("max_turns", "must not be negative", str(max_turns))
        if not await self.log.exists(conversation_id):
            raise ConversationNotFoundError(conversation_id)

        lines = await self.log.read_tail(conversation_id, max_turns=max(max_turns, 1))
        turns = [line for line in lines if isinstance(line, TranscriptTurn)] if max_turns else []

        compression: TranscriptEvent | None = None
        for line in lines:
            if isinstance(line, TranscriptEvent) and line.event is EventType.COMPRESSION:
                compression = line

        context = WorkingContext(conversation_id=conversation_id)
        if compression is not None:
            context.summary = compression.summary
            context.compressed_through = compression.compressed_through
            turns = [t for t in turns if t.turn_number > (compression.compressed_through or 0)]

        if max_tokens is not None:
            turns = self._fit_tokens(turns, max_tokens)

        context.turns = turns
        if turns:
            context.last_activity = turns[-1].timestamp

        conversation = await self.store.get_conversation(conversation_id)
        if conversation is not None:
            context.abbreviation = conversation.abbreviation
            context.title = conversation.title
            if context.last_activity is None:
                context.last_activity = conversation.updated
        return context

    @staticmethod
    def _fit_tokens(turns: list[TranscriptTurn], max_tokens: int) -> list[TranscriptTurn]:
        kept: list[TranscriptTurn] = []
        used = 0
        for turn in reversed(turns):
            cost = tokens.count_tokens(turn.indexed_text)
            if kept and used + cost > max_tokens:
                break
            kept.append(turn)
            used += cost
        kept.reverse()
        return kept
