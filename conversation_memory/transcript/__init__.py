"""
Append-only JSONL transcripts, one file per conversation.
"""

from .log import TranscriptLog

__all__ = ["TranscriptLog"]
