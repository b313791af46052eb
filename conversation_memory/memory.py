"""
ConversationMemory: the entry point for channels, the engine and the UI.

Wires the transcript log, index store, background pipeline, lifecycle,
search and hydration together. Only ``append_turn`` may fail loudly
after its internal retry; every background failure degrades instead of
raising.

Example:
    memory = await ConversationMemory.create(
        MemoryConfig(base_dir="~/.assistant"),
        summarizer=OpenAISummarizer.from_env(),
        embedding_provider=OpenAIEmbeddings.from_env(),
    )
    await memory.start()
    conversation = await memory.create_conversation("web")
    await memory.append_turn(conversation.id, "user", "Is the server up?")
    matches = await memory.search("server")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import MemoryConfig
from .embeddings import EmbeddingProvider
from .exceptions import ConversationNotFoundError, ValidationError, WriteFailure
from .fusion import SearchFusion
from .hydration import ContextHydrator, WorkingContext
from .id_utils import new_conversation_id
from .index import IndexStore, KeywordIndexer, VectorIndex
from .lifecycle import LifecycleManager
from .logging_utils import configure_logging, for_conversation
from .models import (
    ChannelMeta,
    Conversation,
    ConversationMatch,
    ConversationState,
    Role,
    SearchFilters,
    TranscriptEvent,
    TranscriptLine,
    TranscriptMeta,
    TranscriptTurn,
    TurnRange,
    utc_now,
)
from .notifications import Notifier, Subscriber
from .pipeline import AbbreviationPipeline
from .recovery import RecoveryManager, RecoveryReport
from .summarization import Summarizer
from .transcript import TranscriptLog

logger = logging.getLogger(__name__)


class ConversationMemory:
    """Durable conversation storage with hybrid retrieval."""

    def __init__(
        self,
        config: MemoryConfig,
        store: IndexStore,
        summarizer: Summarizer | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        notifier: Notifier | None = None,
    ):
        self.config = config
        self.store = store
        self.summarizer = summarizer
        self.embedding_provider = embedding_provider
        self.notifier = notifier or Notifier()

        self.log = TranscriptLog(config.conversations_dir)
        self.keyword = KeywordIndexer(store)
        self.vectors = VectorIndex(store)
        self.pipeline = AbbreviationPipeline(
            self.log,
            store,
            self.vectors,
            config,
            summarizer=summarizer,
            embedder=embedding_provider,
            notifier=self.notifier,
        )
        self.lifecycle = LifecycleManager(
            self.pipeline,
            store,
            self.notifier,
            idle_timeout_seconds=config.idle_timeout_seconds,
            naming_first_turn=config.naming_first_turn,
        )
        self.fusion = SearchFusion(
            self.keyword, self.vectors, store, config, embedder=embedding_provider
        )
        self.hydrator = ContextHydrator(self.log, store, config)
        self.recovery = RecoveryManager(
            self.log,
            store,
            self.keyword,
            self.vectors,
            self.pipeline,
            embedder=embedding_provider,
            lifecycle=self.lifecycle,
        )

        self.log.add_listener(self._index_written_lines)

        self._append_locks: dict[str, asyncio.Lock] = {}
        self._last_turn: dict[str, tuple[int, Role | None]] = {}
        self._started = False
        self._closed = False

    @classmethod
    async def create(
        cls,
        config: MemoryConfig | None = None,
        summarizer: Summarizer | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        notifier: Notifier | None = None,
        use_fts: bool = True,
    ) -> ConversationMemory:
        """Open the index store and build the service. Call ``start()`` next."""
        if config is None:
            config = MemoryConfig.from_env()
        if config.log_level:
            configure_logging(config.log_level, config.log_format)
        store = await IndexStore.open(config.db_path, use_fts=use_fts)
        return cls(
            config,
            store,
            summarizer=summarizer,
            embedding_provider=embedding_provider,
            notifier=notifier,
        )

    async def start(self) -> RecoveryReport:
        """Reconcile indexes with transcripts, then start background work."""
        report = await self.recovery.recover()
        self.pipeline.start()
        self._started = True
        return report

    async def close(self) -> None:
        """Drain the pipeline, cancel timers and release resources."""
        if self._closed:
            return
        self._closed = True

        await self.lifecycle.shutdown()
        await self.pipeline.drain()
        await self.store.close()
        if self.summarizer is not None:
            await self.summarizer.close()
        if self.embedding_provider is not None:
            await self.embedding_provider.close()

    async def __aenter__(self) -> ConversationMemory:
        if not self._started:
            await self.start()
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()

    def subscribe(self, callback: Subscriber) -> Any:
        """Subscribe to push notifications. Returns an unsubscribe function."""
        return self.notifier.subscribe(callback)

    # =========================================================================
    # Conversations
    # =========================================================================

    async def create_conversation(
        self, channel: str, participants: list[str] | None = None
    ) -> Conversation:
        """Start a new conversation on a channel."""
        if not channel:
            raise ValidationError("channel", "must not be empty")

        conversation_id = new_conversation_id()
        now = utc_now()
        meta = TranscriptMeta(
            conversation_id=conversation_id,
            channel=channel,
            created=now,
            participants=list(participants or []),
        )
        await self.log.create(meta)

        conversation = Conversation(
            id=conversation_id,
            channel=channel,
            created=now,
            updated=now,
            participants=list(meta.participants),
        )
        await self.store.upsert_conversation(conversation)
        self._last_turn[conversation_id] = (0, None)

        await self.lifecycle.register(conversation_id)
        await self.notifier.conversation_created(conversation_id, channel)
        for_conversation(logger, conversation_id).info("Created on %s", channel)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return await self.store.get_conversation(conversation_id)

    async def list_conversations(
        self, channel: str | None = None, limit: int | None = None
    ) -> list[Conversation]:
        return await self.store.list_conversations(channel=channel, limit=limit)

    def state(self, conversation_id: str) -> ConversationState | None:
        """In-process lifecycle state of a conversation."""
        return self.lifecycle.state(conversation_id)

    async def _require(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    # =========================================================================
    # Turns
    # =========================================================================

    async def append_turn(
        self,
        conversation_id: str,
        role: Role | str,
        content: str,
        channel_meta: ChannelMeta | None = None,
    ) -> TranscriptTurn:
        """Durably record a turn and index it for keyword search.

        A user turn opens a new turn number; the assistant reply that
        follows shares it.

        Raises:
            ConversationNotFoundError: Unknown conversation
            ValidationError: Bad role or empty content
            WriteFailure: The write failed after a retry. The turn is held in
                memory and written ahead of the next append; do not resubmit.
        """
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError("role", "must be 'user' or 'assistant'", str(role)) from None
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content", "must not be empty")

        await self._require(conversation_id)
        meta = channel_meta or ChannelMeta()

        async with self._append_lock(conversation_id):
            last_number, last_role = await self._last_turn_state(conversation_id)
            if role is Role.ASSISTANT and last_role is Role.USER:
                turn_number = last_number
            else:
                turn_number = last_number + 1

            turn = TranscriptTurn(
                role=role,
                content=content,
                turn_number=turn_number,
                timestamp=utc_now(),
                channel=meta.channel,
                sender=meta.sender,
                usage=meta.usage,
                cost=meta.cost,
                thinking=meta.thinking,
            )

            try:
                await self.log.append(conversation_id, turn)
            finally:
                # A buffered turn still holds its number
                self._last_turn[conversation_id] = (turn_number, role)

            await self.store.record_activity(conversation_id, turn_number, turn.timestamp)

        await self.lifecycle.on_turn(conversation_id, turn_number)
        return turn

    async def fetch_turns(
        self, conversation_id: str, turn_range: TurnRange | None = None
    ) -> list[TranscriptTurn]:
        """Raw turns in an inclusive turn-number range."""
        if not await self.log.exists(conversation_id):
            raise ConversationNotFoundError(conversation_id)
        return await self.log.read_turns(conversation_id, turn_range)

    async def hydrate_context(
        self,
        conversation_id: str,
        max_turns: int | None = None,
        max_tokens: int | None = None,
    ) -> WorkingContext:
        return await self.hydrator.hydrate(conversation_id, max_turns=max_turns, max_tokens=max_tokens)

    async def on_compression(
        self, conversation_id: str, compressed_through: int, summary: str
    ) -> None:
        """Record that the engine compressed its context through a turn."""
        if compressed_through < 0:
            raise ValidationError("compressed_through", "must be >= 0", str(compressed_through))
        await self._require(conversation_id)

        async with self._append_lock(conversation_id):
            await self.log.append(
                conversation_id, TranscriptEvent.compression(compressed_through, summary)
            )
        await self.lifecycle.on_compression(conversation_id)

    async def switch_away(self, conversation_id: str) -> bool:
        """The user left this conversation; abbreviate it now rather than on timeout."""
        await self._require(conversation_id)
        return await self.lifecycle.switch_away(conversation_id)

    async def rename(
        self, conversation_id: str, title: str, topics: list[str] | None = None
    ) -> Conversation:
        """Set a title chosen by the user. Automatic renaming stops for good."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("title", "must not be empty")
        conversation = await self._require(conversation_id)

        event = TranscriptEvent.title_assigned(
            title,
            topics if topics is not None else conversation.topics,
            manual=True,
            at_turn=conversation.turn_count,
        )
        async with self._append_lock(conversation_id):
            await self.log.append(conversation_id, event)
        await self.store.set_title(
            conversation_id, title, topics, manual=True, at_turn=conversation.turn_count
        )
        await self.notifier.conversation_renamed(
            conversation_id, title, event.topics or [], manual=True
        )
        return await self._require(conversation_id)

    # =========================================================================
    # Search
    # =========================================================================

    async def search(
        self, query: str, filters: SearchFilters | None = None
    ) -> list[ConversationMatch]:
        """Hybrid keyword and semantic search over conversations. Never raises."""
        return await self.fusion.search(query, filters)

    # =========================================================================
    # Internals
    # =========================================================================

    def _append_lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._append_locks.get(conversation_id)
        if lock is None:
            lock = self._append_locks[conversation_id] = asyncio.Lock()
        return lock

    async def _last_turn_state(self, conversation_id: str) -> tuple[int, Role | None]:
        if conversation_id not in self._last_turn:
            turns = await self.log.read_turns(conversation_id)
            self._last_turn[conversation_id] = (
                (turns[-1].turn_number, turns[-1].role) if turns else (0, None)
            )
        return self._last_turn[conversation_id]

    async def _index_written_lines(self, conversation_id: str, lines: list[TranscriptLine]) -> None:
        for line in lines:
            if isinstance(line, TranscriptTurn):
                await self.keyword.on_turn_appended(conversation_id, line)


__all__ = ["ConversationMemory", "WriteFailure"]
