"""
Parsing of summarizer replies.

A reply is either plain text, taken whole as the abbreviation, or a JSON
object (bare, fenced in a markdown code block, or embedded in prose):

    {"abbreviation": "...", "title": "three-word-title", "topics": ["tag"]}

Titles must be three lowercase words joined by hyphens. A malformed
title is dropped rather than stored; the abbreviation is still used.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_TITLE_RE = re.compile(r"^[a-z]+-[a-z]+-[a-z]+$")
_TOPIC_JUNK_RE = re.compile(r"[^a-z0-9-]+")

MAX_TOPICS = 5


@dataclass
class SummaryResult:
    """Abbreviation plus an optional proposed title and topics."""

    abbreviation: str
    title: str | None = None
    topics: list[str] = field(default_factory=list)


def is_valid_title(title: Any) -> bool:
    """Exactly three lowercase words separated by hyphens."""
    return isinstance(title, str) and bool(_TITLE_RE.match(title))


def normalize_topics(topics: Any) -> list[str]:
    """Kebab-case topic tags, deduplicated, at most ``MAX_TOPICS``."""
    if not isinstance(topics, list):
        return []
    result: list[str] = []
    for topic in topics:
        if not isinstance(topic, str):
            continue
        tag = _TOPIC_JUNK_RE.sub("-", topic.strip().lower()).strip("-")
        if tag and tag not in result:
            result.append(tag)
    return result[:MAX_TOPICS]


def truncate(text: str, max_chars: int) -> str:
    """Cut text to ``max_chars``, preferring a word boundary, with an ellipsis."""
    text = text.strip()
    if len(text) <= max_chars:
        return text
    cut = text[: max_chars - 3]
    space = cut.rfind(" ")
    if space > max_chars // 2:
        cut = cut[:space]
    return cut.rstrip() + "..."


def _extract_object(reply: str) -> dict[str, Any] | None:
    candidates = [reply]
    fenced = _FENCED_JSON_RE.search(reply)
    if fenced:
        candidates.append(fenced.group(1))
    embedded = _OBJECT_RE.search(reply)
    if embedded:
        candidates.append(embedded.group(0))

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


def parse_summary(reply: str, max_chars: int) -> SummaryResult:
    """Parse a summarizer reply.

    Raises:
        ValueError: If the reply holds no abbreviation text.
    """
    reply = (reply or "").strip()
    data = _extract_object(reply) if "{" in reply else None

    if data is not None and isinstance(data.get("abbreviation"), str):
        abbreviation = data["abbreviation"].strip()
        title = data.get("title")
        if title is not None and not is_valid_title(title):
            logger.warning("Discarding malformed title from summarizer: %r", title)
            title = None
        topics = normalize_topics(data.get("topics"))
    else:
        abbreviation, title, topics = reply, None, []

    if not abbreviation:
        raise ValueError("summarizer returned no abbreviation")

    return SummaryResult(
        abbreviation=truncate(abbreviation, max_chars),
        title=title,
        topics=topics,
    )
