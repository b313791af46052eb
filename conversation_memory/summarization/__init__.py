"""
Transcript summarization.

Provides:
- Abstract Summarizer interface
- Reply parsing into abbreviation, title and topics
- OpenAI chat implementation
"""

from .base import Summarizer, render_transcript
from .openai import OpenAISummarizer
from .parsing import SummaryResult, is_valid_title, parse_summary

__all__ = [
    "Summarizer",
    "OpenAISummarizer",
    "SummaryResult",
    "is_valid_title",
    "parse_summary",
    "render_transcript",
]
