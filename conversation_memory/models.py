"""
Core data types for conversation storage.

The transcript is a sequence of JSON lines, each one of three shapes:

- ``meta``: the header, always the first line of a transcript
- ``turn``: one user or assistant message
- ``event``: a lifecycle record (title, compression, abbreviation, metadata)

``parse_line`` is the only way a raw dict becomes a line object, and it
rejects anything that is not exactly one of those shapes. Everything else
in this module (conversations, index rows, search types) is derived data
that can be rebuilt from the transcripts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .exceptions import CorruptLineError

# =============================================================================
# Enums
# =============================================================================


class Role(Enum):
    """Speaker of a turn."""

    USER = "user"
    ASSISTANT = "assistant"

    @property
    def label(self) -> str:
        """Prefix used when rendering or indexing a turn."""
        return "User" if self is Role.USER else "Assistant"


class EventType(Enum):
    """Lifecycle events recorded in a transcript."""

    TITLE_ASSIGNED = "title_assigned"
    COMPRESSION = "compression"
    ABBREVIATION = "abbreviation"
    META_UPDATE = "meta_update"


class ConversationState(Enum):
    """In-process lifecycle state of a conversation. There is no terminal state."""

    CREATED = "created"
    ACTIVE = "active"
    COMPRESSED = "compressed"
    IDLE = "idle"


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


# =============================================================================
# Transcript lines
# =============================================================================


@dataclass
class TranscriptMeta:
    """Header line of a transcript."""

    conversation_id: str
    channel: str
    created: datetime
    participants: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "meta",
            "id": self.conversation_id,
            "channel": self.channel,
            "created": self.created.isoformat(),
            "participants": list(self.participants),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranscriptMeta:
        return cls(
            conversation_id=data["id"],
            channel=data["channel"],
            created=parse_timestamp(data["created"]),
            participants=list(data.get("participants") or []),
        )


@dataclass
class TranscriptTurn:
    """A single message in a transcript.

    A user message and the assistant response to it share ``turn_number``.
    """

    role: Role
    content: str
    turn_number: int
    timestamp: datetime
    channel: str | None = None
    sender: str | None = None
    usage: dict[str, int] | None = None
    cost: float | None = None
    thinking: str | None = None

    @property
    def indexed_text(self) -> str:
        """Role-prefixed text stored in the keyword index."""
        return f"{self.role.label}: {self.content}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "turn",
            "role": self.role.value,
            "content": self.content,
            "turn_number": self.turn_number,
            "timestamp": self.timestamp.isoformat(),
        }
        # Optional fields are omitted rather than written as null
        if self.channel is not None:
            data["channel"] = self.channel
        if self.sender is not None:
            data["sender"] = self.sender
        if self.usage is not None:
            data["usage"] = self.usage
        if self.cost is not None:
            data["cost"] = self.cost
        if self.thinking is not None:
            data["thinking"] = self.thinking
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranscriptTurn:
        return cls(
            role=Role(data["role"]),
            content=data["content"],
            turn_number=int(data["turn_number"]),
            timestamp=parse_timestamp(data["timestamp"]),
            channel=data.get("channel"),
            sender=data.get("sender"),
            usage=data.get("usage"),
            cost=data.get("cost"),
            thinking=data.get("thinking"),
        )


@dataclass
class TranscriptEvent:
    """A lifecycle event line.

    Which optional fields are meaningful depends on ``event``:

    - title_assigned: title, topics, manual, at_turn
    - compression: compressed_through, summary
    - abbreviation: text, embedding_model
    - meta_update: any of title, topics, participants
    """

    event: EventType
    timestamp: datetime
    title: str | None = None
    topics: list[str] | None = None
    manual: bool = False
    at_turn: int | None = None
    compressed_through: int | None = None
    summary: str | None = None
    text: str | None = None
    embedding_model: str | None = None
    participants: list[str] | None = None

    def __post_init__(self) -> None:
        if self.event is EventType.TITLE_ASSIGNED and not self.title:
            raise CorruptLineError("title_assigned event without title")
        if self.event is EventType.COMPRESSION and (
            self.compressed_through is None or self.summary is None
        ):
            raise CorruptLineError("compression event needs compressed_through and summary")
        if self.event is EventType.ABBREVIATION and self.text is None:
            raise CorruptLineError("abbreviation event without text")

    @classmethod
    def title_assigned(
        cls, title: str, topics: list[str], *, manual: bool, at_turn: int
    ) -> TranscriptEvent:
        return cls(
            event=EventType.TITLE_ASSIGNED,
            timestamp=utc_now(),
            title=title,
            topics=list(topics),
            manual=manual,
            at_turn=at_turn,
        )

    @classmethod
    def compression(cls, compressed_through: int, summary: str) -> TranscriptEvent:
        return cls(
            event=EventType.COMPRESSION,
            timestamp=utc_now(),
            compressed_through=compressed_through,
            summary=summary,
        )

    @classmethod
    def abbreviation(cls, text: str, embedding_model: str | None) -> TranscriptEvent:
        return cls(
            event=EventType.ABBREVIATION,
            timestamp=utc_now(),
            text=text,
            embedding_model=embedding_model,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "event",
            "event": self.event.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.event is EventType.TITLE_ASSIGNED:
            data.update(
                title=self.title,
                topics=self.topics or [],
                manual=self.manual,
                at_turn=self.at_turn,
            )
        elif self.event is EventType.COMPRESSION:
            data.update(compressed_through=self.compressed_through, summary=self.summary)
        elif self.event is EventType.ABBREVIATION:
            data.update(text=self.text, embedding_model=self.embedding_model)
        else:
            for key in ("title", "topics", "participants"):
                value = getattr(self, key)
                if value is not None:
                    data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranscriptEvent:
        compressed = data.get("compressed_through")
        at_turn = data.get("at_turn")
        return cls(
            event=EventType(data["event"]),
            timestamp=parse_timestamp(data["timestamp"]),
            title=data.get("title"),
            topics=data.get("topics"),
            manual=bool(data.get("manual", False)),
            at_turn=int(at_turn) if at_turn is not None else None,
            compressed_through=int(compressed) if compressed is not None else None,
            summary=data.get("summary"),
            text=data.get("text"),
            embedding_model=data.get("embedding_model"),
            participants=data.get("participants"),
        )


TranscriptLine = TranscriptMeta | TranscriptTurn | TranscriptEvent

_LINE_TYPES: dict[str, type[TranscriptMeta] | type[TranscriptTurn] | type[TranscriptEvent]] = {
    "meta": TranscriptMeta,
    "turn": TranscriptTurn,
    "event": TranscriptEvent,
}


def parse_line(data: Any, line_number: int | None = None) -> TranscriptLine:
    """Turn a decoded JSON value into a transcript line.

    Raises:
        CorruptLineError: If the value is not one of the known line shapes.
    """
    if not isinstance(data, dict):
        raise CorruptLineError(f"expected object, got {type(data).__name__}", line_number)

    line_type = data.get("type")
    line_cls = _LINE_TYPES.get(line_type)  # type: ignore[arg-type]
    if line_cls is None:
        raise CorruptLineError(f"unknown line type {line_type!r}", line_number)

    try:
        return line_cls.from_dict(data)
    except CorruptLineError as e:
        raise CorruptLineError(e.reason, line_number) from None
    except (KeyError, ValueError, TypeError) as e:
        raise CorruptLineError(f"invalid {line_type} line: {e!r}", line_number) from e


# =============================================================================
# Conversation metadata and derived records
# =============================================================================


@dataclass
class Conversation:
    """Conversation metadata, derived from the transcript and kept in SQLite."""

    id: str
    channel: str
    created: datetime
    updated: datetime
    title: str | None = None
    topics: list[str] = field(default_factory=list)
    turn_count: int = 0
    participants: list[str] = field(default_factory=list)
    abbreviation: str | None = None
    needs_abbreviation: bool = False
    manually_named: bool = False
    last_renamed_at_turn: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel,
            "title": self.title,
            "topics": list(self.topics),
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "turn_count": self.turn_count,
            "participants": list(self.participants),
            "abbreviation": self.abbreviation,
            "needs_abbreviation": self.needs_abbreviation,
            "manually_named": self.manually_named,
            "last_renamed_at_turn": self.last_renamed_at_turn,
        }


@dataclass
class AbbreviationRecord:
    """The current abbreviation of a conversation and its embedding."""

    conversation_id: str
    text: str
    vector: list[float]
    embedding_model: str
    generated_at: datetime


@dataclass
class IndexRow:
    """A keyword-searchable unit: one transcript turn line."""

    conversation_id: str
    turn_number: int
    role: Role
    timestamp: datetime
    text: str

    @classmethod
    def from_turn(cls, conversation_id: str, turn: TranscriptTurn) -> IndexRow:
        return cls(
            conversation_id=conversation_id,
            turn_number=turn.turn_number,
            role=turn.role,
            timestamp=turn.timestamp,
            text=turn.indexed_text,
        )


# =============================================================================
# Inputs and results of the external interface
# =============================================================================


@dataclass
class ChannelMeta:
    """Per-turn overrides supplied by a channel connector."""

    channel: str | None = None
    sender: str | None = None
    usage: dict[str, int] | None = None
    cost: float | None = None
    thinking: str | None = None


@dataclass
class TurnRange:
    """Inclusive range of turn numbers. None means unbounded on that side."""

    start: int | None = None
    end: int | None = None

    def __contains__(self, turn_number: int) -> bool:
        if self.start is not None and turn_number < self.start:
            return False
        if self.end is not None and turn_number > self.end:
            return False
        return True


@dataclass
class SearchFilters:
    """Filters applied to both keyword and vector retrieval."""

    channel: str | None = None
    start_date: str | None = None  # ISO format, compared against conversation.updated
    end_date: str | None = None  # ISO format
    conversation_ids: list[str] = field(default_factory=list)
    limit: int | None = None  # None = config.search_limit


@dataclass
class KeywordHit:
    """Best keyword match for one conversation."""

    conversation_id: str
    turn_number: int
    role: str
    text: str
    timestamp: str
    rank_score: float  # backend score; only the ordering is meaningful


@dataclass
class VectorHit:
    """Cosine similarity between a query and a conversation's abbreviation."""

    conversation_id: str
    similarity: float
    text: str


@dataclass
class ConversationMatch:
    """A fused search result."""

    conversation_id: str
    score: float  # RRF score (higher = more relevant)
    sources: list[str]  # "keyword", "semantic"
    snippet: str
    updated: datetime
    title: str | None = None
    channel: str | None = None
    turn_number: int | None = None  # turn of the keyword hit, for fetch_turns
