"""
Shared test configuration and fixtures.

Provides deterministic stand-ins for the external model services:

- MockEmbeddingProvider: hashed bag-of-words vectors, so texts sharing
  words have positive cosine similarity and unrelated texts score zero
- Stub summarizers: echo, JSON with a title, failing, and blocking
- FailingEmbeddingProvider: raises a non-retryable error on every call

and ``memory`` fixtures backed by ``tmp_path``.
"""

import asyncio
import hashlib
import json
import logging
import re

import pytest

from conversation_memory import ConversationMemory, MemoryConfig
from conversation_memory.embeddings import EmbeddingProvider
from conversation_memory.summarization import Summarizer

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Mock embedding provider for testing without API costs.

    Each lowercased word increments one hashed dimension.
    """

    def __init__(self, dimensions: int = 256, model: str = "mock-embeddings"):
        self._dimensions = dimensions
        self._model_name = model
        self.calls = 0

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed_text(self, text: str) -> list[float]:
        self.calls += 1
        vector = [0.0] * self._dimensions
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.md5(word.encode()).digest()
            vector[int.from_bytes(digest[:4], "big") % self._dimensions] += 1.0
        return vector


class FailingEmbeddingProvider(MockEmbeddingProvider):
    """Embedder whose service is down for good."""

    async def embed_text(self, text: str) -> list[float]:
        self.calls += 1
        raise RuntimeError("embedding service unavailable")


class EchoSummarizer(Summarizer):
    """Returns the transcript itself as a plain-text abbreviation."""

    def __init__(self) -> None:
        self.calls = 0
        self.inputs: list[str] = []

    async def summarize(self, transcript_text: str) -> str:
        self.calls += 1
        self.inputs.append(transcript_text)
        return transcript_text


class JsonSummarizer(EchoSummarizer):
    """Replies with JSON carrying the transcript, a title and topics."""

    def __init__(self, title: str = "quiet-server-vigil", topics: list[str] | None = None):
        super().__init__()
        self.title = title
        self.topics = topics if topics is not None else ["server-monitoring"]

    async def summarize(self, transcript_text: str) -> str:
        await super().summarize(transcript_text)
        return json.dumps(
            {"abbreviation": transcript_text, "title": self.title, "topics": self.topics}
        )


class FailingSummarizer(EchoSummarizer):
    async def summarize(self, transcript_text: str) -> str:
        self.calls += 1
        raise RuntimeError("summarizer timed out")


class BlockingSummarizer(EchoSummarizer):
    """Echo summarizer that waits for ``release`` before replying."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def summarize(self, transcript_text: str) -> str:
        self.started.set()
        await self.release.wait()
        return await super().summarize(transcript_text)


@pytest.fixture
def config(tmp_path):
    """Config rooted in a temporary directory with a long idle timeout."""
    return MemoryConfig(base_dir=tmp_path, idle_timeout_seconds=60.0)


@pytest.fixture
def embedding_provider():
    return MockEmbeddingProvider()


@pytest.fixture
def summarizer():
    return JsonSummarizer()


@pytest.fixture
async def memory_factory(config):
    """
    Factory for started ConversationMemory instances.

    Every instance is closed at teardown.
    """
    created: list[ConversationMemory] = []

    async def make(cfg: MemoryConfig | None = None, **kwargs) -> ConversationMemory:
        memory = await ConversationMemory.create(cfg or config, **kwargs)
        await memory.start()
        created.append(memory)
        return memory

    yield make

    for memory in created:
        await memory.close()


@pytest.fixture
async def memory(memory_factory, summarizer, embedding_provider):
    """Started memory with the JSON summarizer and mock embeddings."""
    return await memory_factory(summarizer=summarizer, embedding_provider=embedding_provider)


async def add_exchange(memory: ConversationMemory, conversation_id: str, user: str, assistant: str):
    """Append a user turn and the assistant reply to it."""
    await memory.append_turn(conversation_id, "user", user)
    await memory.append_turn(conversation_id, "assistant", assistant)
