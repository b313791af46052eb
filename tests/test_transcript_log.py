"""
Tests for the append-only transcript log.

Uses real files under tmp_path.
"""

import logging
from datetime import UTC, datetime, timedelta

import pytest

from conversation_memory.exceptions import (
    ConversationNotFoundError,
    ValidationError,
    WriteFailure,
)
from conversation_memory.id_utils import new_conversation_id
from conversation_memory.models import (
    Role,
    TranscriptEvent,
    TranscriptMeta,
    TranscriptTurn,
    TurnRange,
)
from conversation_memory.transcript import TranscriptLog, file_ops

LOG_NAME = "conversation_memory.transcript.log"

BASE = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def make_turn(number: int, role: Role = Role.USER, content: str | None = None) -> TranscriptTurn:
    return TranscriptTurn(
        role=role,
        content=content or f"{role.value} message {number}",
        turn_number=number,
        timestamp=BASE + timedelta(minutes=number),
    )


@pytest.fixture
def log(tmp_path):
    return TranscriptLog(tmp_path / "conversations")


@pytest.fixture
async def conversation_id(log):
    conversation_id = new_conversation_id()
    await log.create(TranscriptMeta(conversation_id=conversation_id, channel="web", created=BASE))
    return conversation_id


class TestCreate:
    @pytest.mark.asyncio
    async def test_writes_meta_header(self, log, conversation_id):
        lines = await log.read_lines(conversation_id)
        assert len(lines) == 1
        assert isinstance(lines[0], TranscriptMeta)
        assert lines[0].channel == "web"

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self, log, conversation_id):
        with pytest.raises(ValidationError):
            await log.create(TranscriptMeta(conversation_id=conversation_id, channel="web", created=BASE))

    @pytest.mark.asyncio
    async def test_listed(self, log, conversation_id):
        assert await log.list_conversation_ids() == [conversation_id]

    def test_invalid_id_rejected(self, log):
        with pytest.raises(ValidationError):
            log.path_for("../escape")


class TestAppend:
    @pytest.mark.asyncio
    async def test_append_then_read_in_order(self, log, conversation_id):
        turns = [make_turn(1), make_turn(1, Role.ASSISTANT), make_turn(2), make_turn(2, Role.ASSISTANT)]
        for turn in turns:
            await log.append(conversation_id, turn)

        read = await log.read_turns(conversation_id)
        assert [(t.turn_number, t.role, t.content) for t in read] == [
            (t.turn_number, t.role, t.content) for t in turns
        ]

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, log):
        with pytest.raises(ConversationNotFoundError):
            await log.append(new_conversation_id(), make_turn(1))

    @pytest.mark.asyncio
    async def test_meta_line_rejected(self, log, conversation_id):
        meta = TranscriptMeta(conversation_id=conversation_id, channel="web", created=BASE)
        with pytest.raises(ValidationError):
            await log.append(conversation_id, meta)

    @pytest.mark.asyncio
    async def test_turn_number_must_not_decrease(self, log, conversation_id):
        await log.append(conversation_id, make_turn(3))
        with pytest.raises(ValidationError):
            await log.append(conversation_id, make_turn(2))

    @pytest.mark.asyncio
    async def test_turn_number_checked_after_restart(self, tmp_path, log, conversation_id):
        await log.append(conversation_id, make_turn(5))

        reopened = TranscriptLog(tmp_path / "conversations")
        with pytest.raises(ValidationError):
            await reopened.append(conversation_id, make_turn(4))

    @pytest.mark.asyncio
    async def test_listeners_see_written_lines(self, log, conversation_id):
        seen = []

        async def listener(cid, lines):
            seen.append((cid, lines))

        log.add_listener(listener)
        turn = make_turn(1)
        await log.append(conversation_id, turn)
        assert seen == [(conversation_id, [turn])]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_fail_append(self, log, conversation_id):
        async def listener(cid, lines):
            raise RuntimeError("index down")

        log.add_listener(listener)
        await log.append(conversation_id, make_turn(1))
        assert len(await log.read_turns(conversation_id)) == 1


class TestWriteFailure:
    """A write that fails twice is buffered and flushed on the next append."""

    @pytest.mark.asyncio
    async def test_retried_once(self, monkeypatch, log, conversation_id):
        real_append = file_ops.append_lines
        attempts = []

        async def flaky(path, records, *, repair=False):
            attempts.append(len(records))
            if len(attempts) == 1:
                raise OSError("disk hiccup")
            await real_append(path, records, repair=repair)

        monkeypatch.setattr(file_ops, "append_lines", flaky)
        await log.append(conversation_id, make_turn(1))

        assert len(attempts) == 2
        assert len(await log.read_turns(conversation_id)) == 1

    @pytest.mark.asyncio
    async def test_buffered_then_flushed_ahead_of_next(self, monkeypatch, log, conversation_id):
        real_append = file_ops.append_lines

        async def broken(path, records, *, repair=False):
            raise OSError("disk full")

        monkeypatch.setattr(file_ops, "append_lines", broken)
        first = make_turn(1)
        with pytest.raises(WriteFailure) as exc_info:
            await log.append(conversation_id, first)
        assert exc_info.value.buffered is True
        assert log.pending_count(conversation_id) == 1
        assert await log.read_turns(conversation_id) == []

        monkeypatch.setattr(file_ops, "append_lines", real_append)
        second = make_turn(1, Role.ASSISTANT)
        written = await log.append(conversation_id, second)

        assert written == [first, second]
        assert log.pending_count() == 0
        assert [t.role for t in await log.read_turns(conversation_id)] == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_flush_pending(self, monkeypatch, log, conversation_id):
        real_append = file_ops.append_lines

        async def broken(path, records, *, repair=False):
            raise OSError("disk full")

        monkeypatch.setattr(file_ops, "append_lines", broken)
        with pytest.raises(WriteFailure):
            await log.append(conversation_id, make_turn(1))

        monkeypatch.setattr(file_ops, "append_lines", real_append)
        flushed = await log.flush_pending(conversation_id)
        assert len(flushed) == 1
        assert await log.flush_pending(conversation_id) == []
        assert len(await log.read_turns(conversation_id)) == 1

    @pytest.mark.asyncio
    async def test_partial_write_does_not_swallow_retried_line(
        self, monkeypatch, caplog, log, conversation_id
    ):
        await log.append(conversation_id, make_turn(1))
        real_append = file_ops.append_lines
        attempts = []

        async def torn(path, records, *, repair=False):
            attempts.append(repair)
            if len(attempts) == 1:
                with open(path, "a", encoding="utf-8") as f:
                    f.write('{"type": "turn", "ro')
                raise OSError(28, "No space left on device")
            await real_append(path, records, repair=repair)

        monkeypatch.setattr(file_ops, "append_lines", torn)
        await log.append(conversation_id, make_turn(2, Role.ASSISTANT, "Disk is at 40%"))

        with caplog.at_level(logging.WARNING, logger=LOG_NAME):
            turns = await log.read_turns(conversation_id)

        assert [t.turn_number for t in turns] == [1, 2]
        assert turns[-1].content == "Disk is at 40%"
        assert not [r for r in caplog.records if "malformed" in r.getMessage()]
        with open(log.path_for(conversation_id), encoding="utf-8") as f:
            assert '"ro{' not in f.read()

    @pytest.mark.asyncio
    async def test_failed_fsync_does_not_duplicate_line(self, monkeypatch, log, conversation_id):
        real_append = file_ops.append_lines
        attempts = []

        async def landed_then_failed(path, records, *, repair=False):
            attempts.append(len(records))
            await real_append(path, records, repair=repair)
            if len(attempts) == 1:
                raise OSError(5, "Input/output error")

        monkeypatch.setattr(file_ops, "append_lines", landed_then_failed)
        await log.append(conversation_id, make_turn(1))

        assert len(attempts) == 2
        assert [t.turn_number for t in await log.read_turns(conversation_id)] == [1]

    @pytest.mark.asyncio
    async def test_buffered_write_leaves_no_fragment(self, monkeypatch, log, conversation_id):
        real_append = file_ops.append_lines
        path = log.path_for(conversation_id)
        size_before = path.stat().st_size

        async def torn(path, records, *, repair=False):
            with open(path, "a", encoding="utf-8") as f:
                f.write('{"type": "turn", "ro')
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(file_ops, "append_lines", torn)
        with pytest.raises(WriteFailure):
            await log.append(conversation_id, make_turn(1))
        assert path.stat().st_size == size_before

        monkeypatch.setattr(file_ops, "append_lines", real_append)
        await log.append(conversation_id, make_turn(1, Role.ASSISTANT))
        assert [t.role for t in await log.read_turns(conversation_id)] == [Role.USER, Role.ASSISTANT]


class TestCorruptLines:
    @pytest.mark.asyncio
    async def test_malformed_line_skipped_with_one_warning(self, caplog, log, conversation_id):
        await log.append(conversation_id, make_turn(1))
        with open(log.path_for(conversation_id), "a", encoding="utf-8") as f:
            f.write('{"type": "turn", "role": "user", "content": \n')
        await log.append(conversation_id, make_turn(2))

        with caplog.at_level(logging.WARNING, logger=LOG_NAME):
            lines = [line async for line in log.read_all(conversation_id)]

        turns = [line for line in lines if isinstance(line, TranscriptTurn)]
        assert [t.turn_number for t in turns] == [1, 2]
        warnings = [r for r in caplog.records if r.name == LOG_NAME and r.levelno == logging.WARNING]
        assert len(warnings) == 1

    @pytest.mark.asyncio
    async def test_unknown_shape_skipped(self, log, conversation_id):
        with open(log.path_for(conversation_id), "a", encoding="utf-8") as f:
            f.write('{"type": "bookmark", "at": 3}\n')
        await log.append(conversation_id, make_turn(1))
        assert [t.turn_number for t in await log.read_turns(conversation_id)] == [1]

    @pytest.mark.asyncio
    async def test_torn_tail_repaired_on_next_append(self, tmp_path, log, conversation_id):
        await log.append(conversation_id, make_turn(1))
        with open(log.path_for(conversation_id), "a", encoding="utf-8") as f:
            f.write('{"type": "turn", "role": "assist')  # crash mid-write

        reopened = TranscriptLog(tmp_path / "conversations")
        await reopened.append(conversation_id, make_turn(2))

        assert [t.turn_number for t in await reopened.read_turns(conversation_id)] == [1, 2]


class TestReads:
    @pytest.fixture
    async def filled(self, log, conversation_id):
        for number in range(1, 6):
            await log.append(conversation_id, make_turn(number))
            await log.append(conversation_id, make_turn(number, Role.ASSISTANT))
        await log.append(conversation_id, TranscriptEvent.compression(3, "first three turns"))
        return conversation_id

    @pytest.mark.asyncio
    async def test_read_turns_range(self, log, filled):
        turns = await log.read_turns(filled, TurnRange(start=2, end=3))
        assert [(t.turn_number, t.role) for t in turns] == [
            (2, Role.USER),
            (2, Role.ASSISTANT),
            (3, Role.USER),
            (3, Role.ASSISTANT),
        ]

    @pytest.mark.asyncio
    async def test_read_tail_keeps_whole_turns(self, log, filled):
        lines = await log.read_tail(filled, max_turns=2)
        turns = [line for line in lines if isinstance(line, TranscriptTurn)]
        assert [t.turn_number for t in turns] == [4, 4, 5, 5]
        assert isinstance(lines[-1], TranscriptEvent)

    @pytest.mark.asyncio
    async def test_read_tail_by_bytes(self, log, filled):
        lines = await log.read_tail(filled, max_bytes=400)
        assert lines
        assert all(not isinstance(line, TranscriptMeta) for line in lines)
        assert isinstance(lines[-1], TranscriptEvent)

    @pytest.mark.asyncio
    async def test_read_meta(self, log, filled):
        meta = await log.read_meta(filled)
        assert meta is not None
        assert meta.conversation_id == filled
