"""
Background abbreviation pipeline.

Idle conversations are summarized and embedded here so that callers never
wait on a model. ``enqueue`` only records intent; worker tasks do the
work:

1. read the full transcript
2. summarize it into a bounded abbreviation (plus a proposed title)
3. embed the abbreviation
4. store text and vector in one transaction, then log an abbreviation event
5. rename the conversation when it is eligible and not manually named

A conversation has at most one queued entry besides the pass currently
running for it, and a per-conversation lock keeps passes for the same
conversation serialized when several workers run. Failures never
propagate: the conversation is flagged ``needs_abbreviation`` and picked
up again by the periodic sweep or by recovery at the next start. When
no turn was added since the stored abbreviation, that retry only embeds
the stored text. Without an embedder the text alone is final.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .config import MemoryConfig
from .embeddings import CircuitBreaker, EmbeddingProvider, RetryConfig, retry_with_backoff
from .exceptions import EmbeddingError, StorageIOError, SummarizationError
from .index.store import IndexStore
from .index.vector import VectorIndex
from .logging_utils import for_conversation
from .models import (
    AbbreviationRecord,
    EventType,
    TranscriptEvent,
    TranscriptLine,
    TranscriptTurn,
    utc_now,
)
from .notifications import Notifier
from .summarization import Summarizer, SummaryResult, parse_summary, render_transcript
from .transcript import TranscriptLog

logger = logging.getLogger(__name__)

# Naming passes look at the recent part of the conversation only
NAMING_WINDOW_TURNS = 10


@dataclass
class PipelineTask:
    """Work requested for one conversation."""

    conversation_id: str
    abbreviate: bool = False
    name: bool = False


@dataclass
class PassResult:
    """Outcome of one processing pass, for logging and tests."""

    conversation_id: str
    abbreviated: bool = False
    embedded: bool = False
    renamed: bool = False
    error: str | None = None


class AbbreviationPipeline:
    """Queue plus worker tasks that summarize and embed idle conversations."""

    def __init__(
        self,
        log: TranscriptLog,
        store: IndexStore,
        vectors: VectorIndex,
        config: MemoryConfig,
        summarizer: Summarizer | None = None,
        embedder: EmbeddingProvider | None = None,
        notifier: Notifier | None = None,
    ):
        self.log = log
        self.store = store
        self.vectors = vectors
        self.config = config
        self.summarizer = summarizer
        self.embedder = embedder
        self.notifier = notifier or Notifier()

        self.retry_config = RetryConfig(max_retries=config.embed_max_retries)
        self.circuit = CircuitBreaker()

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: dict[str, PipelineTask] = {}
        self._in_flight: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._sweep_task: asyncio.Task[None] | None = None
        self._accepting = True

        self.passes_completed = 0
        self.last_results: dict[str, PassResult] = {}

    # =========================================================================
    # Queueing
    # =========================================================================

    def enqueue(self, conversation_id: str) -> bool:
        """Request an abbreviation pass. Never blocks.

        Returns:
            True if a new queue entry was created, False if the request was
            merged into an entry that was already waiting.
        """
        return self._request(conversation_id, abbreviate=True)

    def enqueue_naming(self, conversation_id: str) -> bool:
        """Request a naming-only pass (title and topics, no abbreviation)."""
        return self._request(conversation_id, name=True)

    def _request(self, conversation_id: str, abbreviate: bool = False, name: bool = False) -> bool:
        if not self._accepting:
            logger.debug("Pipeline draining, dropping request for %s", conversation_id)
            return False

        task = self._pending.get(conversation_id)
        if task is not None:
            task.abbreviate = task.abbreviate or abbreviate
            task.name = task.name or name
            return False

        self._pending[conversation_id] = PipelineTask(conversation_id, abbreviate, name)
        self._queue.put_nowait(conversation_id)
        return True

    def status(self) -> dict[str, Any]:
        return {
            "queued": len(self._pending),
            "in_flight": sorted(self._in_flight),
            "workers": len(self._workers),
            "passes_completed": self.passes_completed,
            "circuit": self.circuit.stats(),
        }

    # =========================================================================
    # Workers
    # =========================================================================

    def start(self) -> None:
        """Start worker tasks and the periodic sweep."""
        if self._workers:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(), name=f"abbreviation-worker-{i}")
            for i in range(self.config.pipeline_workers)
        ]
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="abbreviation-sweep")

    async def join(self) -> None:
        """Wait until every queued and running pass has finished."""
        await self._queue.join()

    async def drain(self) -> None:
        """Stop accepting work, let running passes finish, flag the rest.

        Queued conversations are marked ``needs_abbreviation`` so the next
        start picks them up.
        """
        self._accepting = False

        while True:
            try:
                conversation_id = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            task = self._pending.pop(conversation_id, None)
            if task is not None and task.abbreviate:
                await self.store.set_needs_abbreviation(conversation_id, True)
            self._queue.task_done()

        await self._queue.join()
        await self.stop()

    async def stop(self) -> None:
        """Cancel workers and the sweep without waiting for queued work."""
        tasks = [*self._workers, *([self._sweep_task] if self._sweep_task else [])]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._sweep_task = None

    async def _worker(self) -> None:
        while True:
            conversation_id = await self._queue.get()
            task = self._pending.pop(conversation_id, None)
            try:
                if task is None:
                    continue
                self._in_flight.add(conversation_id)
                async with self._lock(conversation_id):
                    await self.process(task)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Abbreviation pass crashed for %s", conversation_id)
            finally:
                self._in_flight.discard(conversation_id)
                self._queue.task_done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            try:
                await self.sweep()
            except StorageIOError as e:
                logger.warning("Abbreviation sweep failed: %s", e)

    async def sweep(self) -> int:
        """Re-enqueue every conversation flagged ``needs_abbreviation``."""
        flagged = await self.store.flagged_conversations()
        queued = sum(1 for conversation_id in flagged if self.enqueue(conversation_id))
        if flagged:
            logger.info("Sweep re-enqueued %d of %d flagged conversation(s)", queued, len(flagged))
        return queued

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    # =========================================================================
    # Processing
    # =========================================================================

    async def process(self, task: PipelineTask) -> PassResult:
        """Run one pass for a conversation. Never raises for model failures."""
        conversation_id = task.conversation_id
        clog = for_conversation(logger, conversation_id)
        result = PassResult(conversation_id)
        self.last_results[conversation_id] = result

        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            clog.warning("Skipping abbreviation: conversation row missing")
            result.error = "missing"
            return result

        lines = await self.log.read_lines(conversation_id)
        turns = [line for line in lines if isinstance(line, TranscriptTurn)]
        if not turns:
            return result

        # No turns since the stored abbreviation: only the vector can be missing
        if task.abbreviate and (conversation.needs_abbreviation or self.embedder is None):
            if abbreviation_is_current(lines, conversation.abbreviation):
                result.embedded = await self._embed_stored(conversation_id, conversation.abbreviation)
                clog.info("Reused stored abbreviation (embedded=%s)", result.embedded)
                if not task.name:
                    return result
                task = PipelineTask(conversation_id, name=True)

        if self.summarizer is None:
            if task.abbreviate:
                await self.store.set_needs_abbreviation(conversation_id, True)
            result.error = "no summarizer"
            return result

        window = turns if task.abbreviate else turns[-NAMING_WINDOW_TURNS:]
        try:
            reply = await self.summarizer.summarize(render_transcript(window))
            summary = parse_summary(reply, self.config.abbreviation_max_chars)
        except Exception as e:
            clog.error("%s", SummarizationError(conversation_id, e))
            if task.abbreviate:
                await self.store.set_needs_abbreviation(conversation_id, True)
            result.error = "summarization"
            return result

        if task.abbreviate:
            result.abbreviated = True
            result.embedded = await self._store_abbreviation(conversation_id, summary.abbreviation)

        result.renamed = await self._maybe_rename(conversation_id, summary, naming_only=not task.abbreviate)
        self.passes_completed += 1
        clog.info(
            "Pass complete (abbreviated=%s, embedded=%s, renamed=%s)",
            result.abbreviated,
            result.embedded,
            result.renamed,
        )
        return result

    async def _embed(self, conversation_id: str, text: str) -> AbbreviationRecord | None:
        if self.embedder is None:
            return None
        try:
            vector = await retry_with_backoff(
                self.embedder.embed_text,
                text,
                config=self.retry_config,
                circuit=self.circuit,
                context_msg=conversation_id,
            )
        except Exception as e:
            logger.error("%s", EmbeddingError(conversation_id, e))
            return None
        return AbbreviationRecord(
            conversation_id=conversation_id,
            text=text,
            vector=vector,
            embedding_model=self.embedder.model_name,
            generated_at=utc_now(),
        )

    async def _store_abbreviation(self, conversation_id: str, text: str) -> bool:
        record = await self._embed(conversation_id, text)

        # Text is kept even without a vector; the flag stays set for a retry
        # unless there is no embedder to retry with
        await self.store.save_abbreviation(
            conversation_id, text, record, needs_abbreviation=record is None and self.embedder is not None
        )
        await self._log_abbreviation(conversation_id, text, record)
        return record is not None

    async def _embed_stored(self, conversation_id: str, text: str) -> bool:
        """Embed an abbreviation that is already stored as text."""
        if self.embedder is None:
            await self.store.set_needs_abbreviation(conversation_id, False)
            return False
        record = await self._embed(conversation_id, text)
        if record is None:
            # Still flagged; the text and its event are already recorded
            return False
        await self.store.save_abbreviation(conversation_id, text, record)
        await self._log_abbreviation(conversation_id, text, record)
        return True

    async def _log_abbreviation(
        self, conversation_id: str, text: str, record: AbbreviationRecord | None
    ) -> None:
        event = TranscriptEvent.abbreviation(text, record.embedding_model if record else None)
        try:
            await self.log.append(conversation_id, event)
        except StorageIOError as e:
            logger.warning("Could not log abbreviation event for %s: %s", conversation_id, e)

    async def _maybe_rename(
        self, conversation_id: str, summary: SummaryResult, naming_only: bool
    ) -> bool:
        if not summary.title:
            return False

        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None or conversation.manually_named:
            return False

        if conversation.title:
            if naming_only:
                return False
            since = conversation.turn_count - (conversation.last_renamed_at_turn or 0)
            if since < self.config.naming_interval:
                return False
            if conversation.title == summary.title:
                return False

        renamed = await self.store.set_title(
            conversation_id,
            summary.title,
            summary.topics,
            manual=False,
            at_turn=conversation.turn_count,
        )
        if not renamed:
            # A manual rename landed in the meantime
            return False

        event = TranscriptEvent.title_assigned(
            summary.title, summary.topics, manual=False, at_turn=conversation.turn_count
        )
        try:
            await self.log.append(conversation_id, event)
        except StorageIOError as e:
            logger.warning("Could not log title for %s: %s", conversation_id, e)

        await self.notifier.conversation_renamed(
            conversation_id, summary.title, summary.topics, manual=False
        )
        return True


def abbreviation_is_current(lines: list[TranscriptLine], text: str | None) -> bool:
    """Whether ``text`` is the last abbreviation logged and no turn follows it."""
    if not text:
        return False
    for line in reversed(lines):
        if isinstance(line, TranscriptTurn):
            return False
        if isinstance(line, TranscriptEvent) and line.event is EventType.ABBREVIATION:
            return line.text == text
    return False
