"""
Append-only transcript log.

Each conversation has a single JSONL file under the conversations
directory. The log is the source of truth: every index in this package
can be rebuilt by replaying it. Lines are never rewritten or removed.

Durability contract:
- ``append`` returns only after the line is flushed and fsync'd.
- A failed write is undone (the file is cut back to its prior size) and
  retried once. If the retry fails too, the line is
  kept in an in-memory pending buffer, written ahead of the next append
  to the same conversation, and ``WriteFailure`` is raised.
- A malformed line is skipped with one warning; it never invalidates the
  lines around it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

from ..exceptions import (
    ConversationNotFoundError,
    CorruptLineError,
    StorageIOError,
    ValidationError,
    WriteFailure,
)
from ..id_utils import is_valid_conversation_id
from ..models import (
    TranscriptEvent,
    TranscriptLine,
    TranscriptMeta,
    TranscriptTurn,
    TurnRange,
    parse_line,
)
from . import file_ops
from .file_ops import UndecodableLine

logger = logging.getLogger(__name__)

TRANSCRIPT_SUFFIX = ".jsonl"

WriteListener = Callable[[str, list[TranscriptLine]], Awaitable[None]]


class TranscriptLog:
    """Manages JSONL transcript files for conversations."""

    def __init__(self, conversations_dir: Path):
        self.conversations_dir = Path(conversations_dir)
        self._locks: dict[str, asyncio.Lock] = {}
        self._pending: dict[str, list[TranscriptLine]] = {}
        self._last_turn: dict[str, int] = {}
        self._repaired: set[str] = set()
        self._listeners: list[WriteListener] = []

    def add_listener(self, listener: WriteListener) -> None:
        """Register a coroutine awaited with every batch of lines written.

        It runs before ``append``/``flush_pending`` return, so derived
        indexes see a line no later than its writer does.
        """
        self._listeners.append(listener)

    async def _notify(self, conversation_id: str, lines: list[TranscriptLine]) -> None:
        for listener in self._listeners:
            try:
                await listener(conversation_id, lines)
            except Exception:
                logger.exception("Transcript write listener failed for %s", conversation_id)

    def path_for(self, conversation_id: str) -> Path:
        """Transcript file path for a conversation."""
        if not is_valid_conversation_id(conversation_id):
            raise ValidationError("conversation_id", "not a conversation ID", conversation_id)
        return self.conversations_dir / f"{conversation_id}{TRANSCRIPT_SUFFIX}"

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    async def exists(self, conversation_id: str) -> bool:
        return await file_ops.file_exists(self.path_for(conversation_id))

    async def list_conversation_ids(self) -> list[str]:
        """All conversations that have a transcript file, oldest first."""
        files = await file_ops.list_files(self.conversations_dir, TRANSCRIPT_SUFFIX)
        ids = []
        for path in files:
            conversation_id = path.name[: -len(TRANSCRIPT_SUFFIX)]
            if is_valid_conversation_id(conversation_id):
                ids.append(conversation_id)
        return ids

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, meta: TranscriptMeta) -> None:
        """Create a new transcript with its metadata header."""
        path = self.path_for(meta.conversation_id)
        await file_ops.ensure_directory(self.conversations_dir)

        async with self._lock(meta.conversation_id):
            if await file_ops.file_exists(path):
                raise ValidationError(
                    "conversation_id", "transcript already exists", meta.conversation_id
                )
            try:
                await self._write_with_retry(path, [meta.to_dict()], repair=False)
            except OSError as e:
                raise StorageIOError("create_transcript", str(path), e) from e
            self._last_turn[meta.conversation_id] = 0
            self._repaired.add(meta.conversation_id)

    async def append(self, conversation_id: str, line: TranscriptLine) -> list[TranscriptLine]:
        """Durably append a line.

        Lines buffered by an earlier failed append are written first.

        Returns:
            Every line written by this call, in order (buffered lines first,
            ``line`` last).

        Raises:
            ConversationNotFoundError: If the transcript does not exist
            ValidationError: If a turn number would go backwards
            WriteFailure: If the write failed twice; ``line`` is buffered
        """
        if isinstance(line, TranscriptMeta):
            raise ValidationError("line", "meta lines are written by create()")

        path = self.path_for(conversation_id)
        async with self._lock(conversation_id):
            if not await file_ops.file_exists(path):
                raise ConversationNotFoundError(conversation_id)

            last_turn = await self._last_turn_number(conversation_id)
            if isinstance(line, TranscriptTurn) and line.turn_number < last_turn:
                raise ValidationError(
                    "turn_number",
                    f"must not decrease (last {last_turn})",
                    str(line.turn_number),
                )

            pending = self._pending.get(conversation_id, [])
            batch = [*pending, line]
            repair = conversation_id not in self._repaired

            try:
                await self._write_with_retry(path, [item.to_dict() for item in batch], repair=repair)
            except OSError as e:
                self._pending[conversation_id] = batch
                self._note_turn(conversation_id, line)
                logger.error(
                    "Transcript write failed twice for %s, holding %d line(s) in memory: %s",
                    conversation_id,
                    len(batch),
                    e,
                )
                raise WriteFailure(conversation_id, str(path), e, buffered=True) from e

            self._pending.pop(conversation_id, None)
            self._repaired.add(conversation_id)
            self._note_turn(conversation_id, line)

        await self._notify(conversation_id, batch)
        return batch

    async def flush_pending(self, conversation_id: str) -> list[TranscriptLine]:
        """Write lines held in memory by failed appends.

        Returns:
            The lines written (empty if nothing was pending).

        Raises:
            WriteFailure: If the write failed again; lines stay buffered.
        """
        path = self.path_for(conversation_id)
        async with self._lock(conversation_id):
            batch = self._pending.get(conversation_id)
            if not batch:
                return []
            try:
                await self._write_with_retry(
                    path,
                    [item.to_dict() for item in batch],
                    repair=conversation_id not in self._repaired,
                )
            except OSError as e:
                raise WriteFailure(conversation_id, str(path), e, buffered=True) from e
            self._pending.pop(conversation_id, None)
            self._repaired.add(conversation_id)

        await self._notify(conversation_id, batch)
        return batch

    def pending_count(self, conversation_id: str | None = None) -> int:
        """Number of lines held in memory, for one conversation or all."""
        if conversation_id is not None:
            return len(self._pending.get(conversation_id, []))
        return sum(len(lines) for lines in self._pending.values())

    async def _write_with_retry(self, path: Path, records: list[dict], *, repair: bool) -> None:
        """Append records, retrying once.

        A failed attempt may have written part of the payload, or all of it
        before fsync failed. The file is cut back to its prior size before
        the retry and after a final failure, so neither a fragment nor a
        duplicate line is left behind.
        """
        size = await file_ops.file_size(path)
        try:
            await file_ops.append_lines(path, records, repair=repair)
        except OSError as e:
            logger.warning("Transcript write to %s failed, retrying once: %s", path.name, e)
            await self._roll_back(path, size)
            try:
                await file_ops.append_lines(path, records, repair=True)
            except OSError:
                await self._roll_back(path, size)
                raise

    async def _roll_back(self, path: Path, size: int) -> None:
        try:
            await file_ops.truncate_file(path, size)
        except OSError as e:
            # The retry still terminates any fragment with repair=True
            logger.warning("Could not roll back partial write to %s: %s", path.name, e)

    def _note_turn(self, conversation_id: str, line: TranscriptLine) -> None:
        if isinstance(line, TranscriptTurn):
            self._last_turn[conversation_id] = max(
                self._last_turn.get(conversation_id, 0), line.turn_number
            )

    async def _last_turn_number(self, conversation_id: str) -> int:
        if conversation_id not in self._last_turn:
            last = 0
            async for line in self.read_all(conversation_id):
                if isinstance(line, TranscriptTurn):
                    last = max(last, line.turn_number)
            self._last_turn[conversation_id] = last
        return self._last_turn[conversation_id]

    # =========================================================================
    # Reads
    # =========================================================================

    async def read_all(self, conversation_id: str) -> AsyncIterator[TranscriptLine]:
        """Stream every valid line of a transcript, in file order.

        Malformed lines are skipped with a single warning each.
        """
        path = self.path_for(conversation_id)
        async for item in file_ops.iter_jsonl_lenient(path):
            if isinstance(item, UndecodableLine):
                _warn_corrupt(conversation_id, item.line_number, str(item.error))
                continue
            line_number, value = item
            try:
                yield parse_line(value, line_number)
            except CorruptLineError as e:
                _warn_corrupt(conversation_id, line_number, e.reason)

    async def read_lines(self, conversation_id: str) -> list[TranscriptLine]:
        """Read the full transcript including all line types."""
        return [line async for line in self.read_all(conversation_id)]

    async def read_meta(self, conversation_id: str) -> TranscriptMeta | None:
        async for line in self.read_all(conversation_id):
            if isinstance(line, TranscriptMeta):
                return line
        return None

    async def read_turns(
        self, conversation_id: str, turn_range: TurnRange | None = None
    ) -> list[TranscriptTurn]:
        """Read turns, optionally restricted to an inclusive turn-number range."""
        turns = []
        async for line in self.read_all(conversation_id):
            if isinstance(line, TranscriptTurn):
                if turn_range is None or line.turn_number in turn_range:
                    turns.append(line)
        return turns

    async def read_tail(
        self,
        conversation_id: str,
        max_turns: int | None = None,
        max_bytes: int | None = None,
    ) -> list[TranscriptLine]:
        """Read the most recent turns and the events that follow them.

        Args:
            conversation_id: Conversation to read
            max_turns: Keep the last N turn numbers (a user message and its
                response count as one)
            max_bytes: Only consider lines within the last N bytes of the file

        Returns:
            Turn and event lines in file order, starting at the oldest
            included turn. If the window holds no turns, its events.
        """
        if max_bytes is not None:
            lines = await self._read_window(conversation_id, max_bytes)
        else:
            lines = [
                line
                async for line in self.read_all(conversation_id)
                if not isinstance(line, TranscriptMeta)
            ]

        turn_numbers = sorted({line.turn_number for line in lines if isinstance(line, TranscriptTurn)})
        if not turn_numbers:
            return lines

        kept = turn_numbers[-max_turns:] if max_turns is not None and max_turns > 0 else turn_numbers
        first_kept = kept[0]
        start = next(
            i
            for i, line in enumerate(lines)
            if isinstance(line, TranscriptTurn) and line.turn_number >= first_kept
        )
        return lines[start:]

    async def _read_window(self, conversation_id: str, max_bytes: int) -> list[TranscriptLine]:
        path = self.path_for(conversation_id)
        result: list[TranscriptLine] = []
        for raw in await file_ops.read_tail_bytes(path, max_bytes):
            try:
                line = parse_line(json.loads(raw))
            except json.JSONDecodeError as e:
                _warn_corrupt(conversation_id, None, str(e))
                continue
            except CorruptLineError as e:
                _warn_corrupt(conversation_id, None, e.reason)
                continue
            if isinstance(line, (TranscriptTurn, TranscriptEvent)):
                result.append(line)
        return result


def _warn_corrupt(conversation_id: str, line_number: int | None, reason: str) -> None:
    where = f"line {line_number}" if line_number is not None else "tail window"
    logger.warning(
        "Skipping malformed transcript line (%s) in %s: %s",
        where,
        conversation_id,
        reason,
    )
