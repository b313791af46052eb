"""
Abstract base class for summarizers.

A summarizer turns a rendered transcript into a short abbreviation. It may
also propose a title and topic tags by replying with JSON; see
``parsing.parse_summary`` for the accepted reply shapes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import TranscriptTurn


class Summarizer(ABC):
    """Abstract base for transcript summarization."""

    @property
    def model_name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def summarize(self, transcript_text: str) -> str:
        """
        Summarize a rendered transcript.

        Args:
            transcript_text: Output of ``render_transcript``

        Returns:
            The raw reply, either plain abbreviation text or a JSON object

        Raises:
            Exception: If the call fails
        """

    async def close(self) -> None:
        """Release client resources."""

    async def __aenter__(self) -> Summarizer:
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()


def render_transcript(turns: list[TranscriptTurn]) -> str:
    """Render turns as "User: ..." / "Assistant: ..." paragraphs."""
    return "\n\n".join(turn.indexed_text for turn in turns)
