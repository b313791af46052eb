"""Tests for transcript line parsing and data model helpers."""

from datetime import UTC, datetime

import pytest

from conversation_memory.exceptions import CorruptLineError
from conversation_memory.models import (
    EventType,
    IndexRow,
    Role,
    TranscriptEvent,
    TranscriptMeta,
    TranscriptTurn,
    TurnRange,
    parse_line,
    parse_timestamp,
)

TS = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestParseLine:
    """Dispatch of raw dicts to line types."""

    def test_meta_line(self):
        line = parse_line(
            {
                "type": "meta",
                "id": "conv-01ARZ3NDEKTSV4RRFFQ69G5FAV",
                "channel": "telegram",
                "created": "2026-03-01T12:00:00+00:00",
                "participants": ["alice"],
            }
        )
        assert isinstance(line, TranscriptMeta)
        assert line.channel == "telegram"
        assert line.created == TS
        assert line.participants == ["alice"]

    def test_turn_line(self):
        line = parse_line(
            {
                "type": "turn",
                "role": "assistant",
                "content": "All green",
                "turn_number": 3,
                "timestamp": "2026-03-01T12:00:00Z",
                "usage": {"input_tokens": 10, "output_tokens": 4},
            }
        )
        assert isinstance(line, TranscriptTurn)
        assert line.role is Role.ASSISTANT
        assert line.turn_number == 3
        assert line.timestamp == TS
        assert line.usage == {"input_tokens": 10, "output_tokens": 4}
        assert line.sender is None

    def test_compression_event(self):
        line = parse_line(
            {
                "type": "event",
                "event": "compression",
                "timestamp": TS.isoformat(),
                "compressed_through": 12,
                "summary": "Discussed the deploy plan",
            }
        )
        assert isinstance(line, TranscriptEvent)
        assert line.event is EventType.COMPRESSION
        assert line.compressed_through == 12

    def test_not_an_object(self):
        with pytest.raises(CorruptLineError, match="expected object"):
            parse_line(["turn"], line_number=4)

    def test_unknown_type(self):
        with pytest.raises(CorruptLineError) as exc_info:
            parse_line({"type": "note", "text": "hi"}, line_number=7)
        assert exc_info.value.line_number == 7

    def test_unknown_event(self):
        with pytest.raises(CorruptLineError):
            parse_line({"type": "event", "event": "archived", "timestamp": TS.isoformat()})

    def test_turn_missing_content(self):
        with pytest.raises(CorruptLineError, match="invalid turn line"):
            parse_line({"type": "turn", "role": "user", "turn_number": 1, "timestamp": TS.isoformat()})

    def test_compression_without_summary(self):
        with pytest.raises(CorruptLineError, match="compression event"):
            parse_line(
                {
                    "type": "event",
                    "event": "compression",
                    "timestamp": TS.isoformat(),
                    "compressed_through": 2,
                },
                line_number=3,
            )

    def test_bad_role(self):
        with pytest.raises(CorruptLineError):
            parse_line(
                {
                    "type": "turn",
                    "role": "system",
                    "content": "x",
                    "turn_number": 1,
                    "timestamp": TS.isoformat(),
                }
            )


class TestSerialization:
    def test_turn_omits_unset_optionals(self):
        turn = TranscriptTurn(role=Role.USER, content="Hello", turn_number=1, timestamp=TS)
        data = turn.to_dict()
        assert data == {
            "type": "turn",
            "role": "user",
            "content": "Hello",
            "turn_number": 1,
            "timestamp": TS.isoformat(),
        }

    def test_title_event_roundtrip(self):
        event = TranscriptEvent.title_assigned("quiet-server-vigil", ["ops"], manual=False, at_turn=5)
        parsed = parse_line(event.to_dict())
        assert parsed.title == "quiet-server-vigil"
        assert parsed.topics == ["ops"]
        assert parsed.manual is False
        assert parsed.at_turn == 5

    def test_meta_update_only_writes_set_fields(self):
        event = TranscriptEvent(
            event=EventType.META_UPDATE, timestamp=TS, participants=["alice", "bob"]
        )
        data = event.to_dict()
        assert data["participants"] == ["alice", "bob"]
        assert "title" not in data
        assert "topics" not in data


class TestHelpers:
    def test_indexed_text_is_role_prefixed(self):
        user = TranscriptTurn(role=Role.USER, content="Server status?", turn_number=1, timestamp=TS)
        assistant = TranscriptTurn(role=Role.ASSISTANT, content="All green", turn_number=1, timestamp=TS)
        assert user.indexed_text == "User: Server status?"
        assert assistant.indexed_text == "Assistant: All green"

    def test_index_row_from_turn(self):
        turn = TranscriptTurn(role=Role.USER, content="Hi", turn_number=2, timestamp=TS)
        row = IndexRow.from_turn("conv-x", turn)
        assert row.conversation_id == "conv-x"
        assert row.turn_number == 2
        assert row.text == "User: Hi"

    def test_turn_range_inclusive(self):
        window = TurnRange(start=2, end=4)
        assert 2 in window
        assert 4 in window
        assert 1 not in window
        assert 5 not in window

    def test_turn_range_open_ended(self):
        assert 100 in TurnRange(start=3)
        assert 1 in TurnRange(end=3)
        assert 7 in TurnRange()

    def test_naive_timestamp_becomes_utc(self):
        assert parse_timestamp("2026-03-01T12:00:00") == TS
