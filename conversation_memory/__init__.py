"""
Conversation Memory

Durable conversation storage with hybrid retrieval for a personal assistant.

Provides:
- Append-only JSONL transcripts as the source of truth
- SQLite FTS5 keyword index over turns
- Abbreviation vectors with cosine search (numpy)
- Reciprocal Rank Fusion of keyword and semantic rankings
- Background abbreviation and naming pipeline (OpenAI)
- Startup recovery of every derived index from the transcripts

Usage:

    >>> from conversation_memory import ConversationMemory, MemoryConfig
    >>> from conversation_memory import OpenAIEmbeddings, OpenAISummarizer
    >>> memory = await ConversationMemory.create(
    ...     MemoryConfig(base_dir="~/.assistant"),
    ...     summarizer=OpenAISummarizer.from_env(),
    ...     embedding_provider=OpenAIEmbeddings.from_env(),
    ... )
    >>> async with memory:
    ...     conversation = await memory.create_conversation("web")
    ...     await memory.append_turn(conversation.id, "user", "Is the build green?")
    ...     matches = await memory.search("build")
"""

from .config import MemoryConfig

# Embedding providers
from .embeddings import EmbeddingCache, EmbeddingProvider, OpenAIEmbeddings

# Exceptions
from .exceptions import (
    BackendUnavailableError,
    ConversationNotFoundError,
    ConversationStorageError,
    CorruptLineError,
    EmbeddingError,
    IndexDriftError,
    StorageConnectionError,
    StorageIOError,
    SummarizationError,
    ValidationError,
    WriteFailure,
)
from .fusion import rrf_fuse
from .hydration import WorkingContext
from .memory import ConversationMemory

# Data model
from .models import (
    ChannelMeta,
    Conversation,
    ConversationMatch,
    ConversationState,
    EventType,
    Role,
    SearchFilters,
    TranscriptEvent,
    TranscriptMeta,
    TranscriptTurn,
    TurnRange,
)
from .notifications import Notification, NotificationType, Notifier
from .recovery import RecoveryReport

# Summarizers
from .summarization import OpenAISummarizer, Summarizer

__all__ = [
    # Entry point
    "ConversationMemory",
    "MemoryConfig",
    "RecoveryReport",
    "WorkingContext",
    # Data model
    "ChannelMeta",
    "Conversation",
    "ConversationMatch",
    "ConversationState",
    "EventType",
    "Role",
    "SearchFilters",
    "TranscriptEvent",
    "TranscriptMeta",
    "TranscriptTurn",
    "TurnRange",
    # Notifications
    "Notification",
    "NotificationType",
    "Notifier",
    # Search
    "rrf_fuse",
    # Providers
    "EmbeddingProvider",
    "EmbeddingCache",
    "OpenAIEmbeddings",
    "Summarizer",
    "OpenAISummarizer",
    # Exceptions
    "ConversationStorageError",
    "ConversationNotFoundError",
    "ValidationError",
    "StorageIOError",
    "WriteFailure",
    "StorageConnectionError",
    "CorruptLineError",
    "IndexDriftError",
    "SummarizationError",
    "EmbeddingError",
    "BackendUnavailableError",
]

__version__ = "0.1.0"
