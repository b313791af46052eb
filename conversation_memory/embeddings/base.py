"""
Abstract base class for embedding providers.

The abbreviation pipeline embeds one abbreviation per conversation and
search embeds one query at a time, so only ``embed_text`` is required.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class EmbeddingProvider(ABC):
    """Abstract base for embedding generation."""

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Number of dimensions in the embedding vector."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier of the embedding model.

        Stored next to every vector; a different identifier means the
        vector index is rebuilt.
        """

    @abstractmethod
    async def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            Exception: If embedding generation fails
        """

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts, in order. Providers may override with a batched call."""
        return [await self.embed_text(text) for text in texts]

    async def close(self) -> None:
        """Release client resources."""

    async def __aenter__(self) -> EmbeddingProvider:
        return self

    async def __aexit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        await self.close()
