"""
Startup recovery: rebuild derived state from transcripts.

Transcripts are the source of truth; the SQLite file is a projection of
them. Recovery walks every transcript and brings the projection back in
line:

1. pin the vector index to the current embedding model (dropping vectors
   from another model)
2. rebuild missing conversation rows from the meta line and events, and
   reconcile turn count and last activity for existing ones
3. re-index turns missing from the keyword index
4. enqueue every conversation that is flagged or has no abbreviation vector

Deleting the database and running recovery yields the same search results
once the enqueued abbreviations have been regenerated.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .embeddings import EmbeddingProvider
from .exceptions import IndexDriftError, StorageIOError
from .id_utils import conversation_created_at
from .index.keyword import KeywordIndexer
from .index.store import IndexStore
from .index.vector import VectorIndex
from .logging_utils import for_conversation
from .models import (
    Conversation,
    EventType,
    TranscriptEvent,
    TranscriptLine,
    TranscriptMeta,
    TranscriptTurn,
)
from .pipeline import AbbreviationPipeline
from .transcript import TranscriptLog

if TYPE_CHECKING:
    from .lifecycle import LifecycleManager

logger = logging.getLogger(__name__)

UNKNOWN_CHANNEL = "unknown"


@dataclass
class RecoveryReport:
    """What a recovery run found and repaired."""

    scanned: int = 0
    rebuilt: int = 0
    reconciled: int = 0
    rows_reindexed: int = 0
    enqueued: int = 0
    vectors_reset: bool = False
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def project_conversation(conversation_id: str, lines: list[TranscriptLine]) -> Conversation:
    """Derive a conversation row from its transcript lines.

    A transcript whose meta line was lost still yields a row: the channel is
    unknown and the creation time comes from the conversation id.
    """
    meta = next((line for line in lines if isinstance(line, TranscriptMeta)), None)
    if meta is not None:
        created = meta.created
        conversation = Conversation(
            id=conversation_id,
            channel=meta.channel,
            created=created,
            updated=created,
            participants=list(meta.participants),
        )
    else:
        created = conversation_created_at(conversation_id)
        conversation = Conversation(
            id=conversation_id, channel=UNKNOWN_CHANNEL, created=created, updated=created
        )

    turn_numbers: set[int] = set()
    last_abbreviation: TranscriptEvent | None = None
    for line in lines:
        if isinstance(line, TranscriptTurn):
            turn_numbers.add(line.turn_number)
            conversation.updated = max(conversation.updated, line.timestamp)
        elif isinstance(line, TranscriptEvent):
            if line.event is EventType.TITLE_ASSIGNED:
                conversation.title = line.title
                conversation.topics = list(line.topics or [])
                conversation.manually_named = conversation.manually_named or line.manual
                conversation.last_renamed_at_turn = line.at_turn
            elif line.event is EventType.META_UPDATE:
                if line.title is not None:
                    conversation.title = line.title
                if line.topics is not None:
                    conversation.topics = list(line.topics)
                if line.participants is not None:
                    conversation.participants = list(line.participants)
            elif line.event is EventType.ABBREVIATION:
                last_abbreviation = line

    conversation.turn_count = len(turn_numbers)
    if last_abbreviation is not None:
        conversation.abbreviation = last_abbreviation.text
    conversation.needs_abbreviation = conversation.turn_count > 0 and (
        last_abbreviation is None or last_abbreviation.embedding_model is None
    )
    return conversation


class RecoveryManager:
    """Reconciles the index store with the transcripts on startup."""

    def __init__(
        self,
        log: TranscriptLog,
        store: IndexStore,
        keyword: KeywordIndexer,
        vectors: VectorIndex,
        pipeline: AbbreviationPipeline,
        embedder: EmbeddingProvider | None = None,
        lifecycle: LifecycleManager | None = None,
    ):
        self.log = log
        self.store = store
        self.keyword = keyword
        self.vectors = vectors
        self.pipeline = pipeline
        self.embedder = embedder
        self.lifecycle = lifecycle

    async def recover(self) -> RecoveryReport:
        """Run a full recovery pass. Per-conversation failures are recorded, not raised."""
        start = time.perf_counter()
        report = RecoveryReport()

        if self.embedder is not None:
            report.vectors_reset = await self.vectors.ensure_model(
                self.embedder.model_name, self.embedder.dimensions
            )

        for conversation_id in await self.log.list_conversation_ids():
            report.scanned += 1
            try:
                await self._recover_conversation(conversation_id, report)
            except (StorageIOError, sqlite3.Error) as e:
                for_conversation(logger, conversation_id).error("Recovery failed: %s", e)
                report.errors.append(f"{conversation_id}: {e}")

        for conversation_id in await self.store.conversations_needing_abbreviation():
            if self.pipeline.enqueue(conversation_id):
                report.enqueued += 1

        report.duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Recovery complete: scanned=%d rebuilt=%d reconciled=%d reindexed=%d "
            "enqueued=%d vectors_reset=%s errors=%d (%dms)",
            report.scanned,
            report.rebuilt,
            report.reconciled,
            report.rows_reindexed,
            report.enqueued,
            report.vectors_reset,
            len(report.errors),
            report.duration_ms,
        )
        return report

    async def _recover_conversation(self, conversation_id: str, report: RecoveryReport) -> None:
        lines = await self.log.read_lines(conversation_id)
        projected = project_conversation(conversation_id, lines)
        turns = [line for line in lines if isinstance(line, TranscriptTurn)]

        existing = await self.store.get_conversation(conversation_id)
        if existing is None:
            await self.store.upsert_conversation(projected)
            report.rebuilt += 1
        elif (existing.turn_count, existing.updated) != (projected.turn_count, projected.updated):
            existing.turn_count = projected.turn_count
            existing.updated = projected.updated
            await self.store.upsert_conversation(existing)
            report.reconciled += 1

        if await self.keyword.row_count(conversation_id) != len(turns):
            indexed = await self.keyword.indexed_keys(conversation_id)
            missing = [t for t in turns if (t.turn_number, t.role.value) not in indexed]
            if missing:
                logger.warning("%s", IndexDriftError(conversation_id, len(missing)))
                report.rows_reindexed += await self.keyword.reindex(conversation_id, missing)

        if self.lifecycle is not None:
            self.lifecycle.restore(conversation_id, has_turns=bool(turns))
