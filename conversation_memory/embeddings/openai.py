"""
OpenAI embedding provider.

Uses the official OpenAI Python SDK (``AsyncOpenAI``). Query caching lives
in search, so this provider does not cache.
"""

from __future__ import annotations

import logging
import os

from openai import AsyncOpenAI

from .base import EmbeddingProvider

logger = logging.getLogger(__name__)


class OpenAIEmbeddings(EmbeddingProvider):
    """
    OpenAI embedding provider.

    Supports models:
    - text-embedding-3-small (1536 dimensions)
    - text-embedding-3-large (3072 dimensions)
    - text-embedding-ada-002 (1536 dimensions)
    """

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        base_url: str | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url

        if dimensions is None:
            if model not in self.MODEL_DIMENSIONS:
                raise ValueError(
                    f"Unknown embedding model '{model}', pass dimensions explicitly"
                )
            dimensions = self.MODEL_DIMENSIONS[model]
        self._dimensions = dimensions
        self._client: AsyncOpenAI | None = None

        logger.info("OpenAI embeddings initialized: model=%s, dimensions=%d", model, dimensions)

    @classmethod
    def from_env(cls) -> OpenAIEmbeddings:
        """
        Create provider from environment variables.

        Required env vars:
            OPENAI_API_KEY: OpenAI API key

        Optional env vars:
            OPENAI_EMBEDDING_MODEL: Model name (default: text-embedding-3-small)
            OPENAI_EMBEDDING_DIMENSIONS: Vector dimensions (auto-detected)
            OPENAI_BASE_URL: Custom base URL
        """
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable required")

        dimensions_str = os.environ.get("OPENAI_EMBEDDING_DIMENSIONS")
        return cls(
            api_key=api_key,
            model=os.environ.get("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            dimensions=int(dimensions_str) if dimensions_str else None,
            base_url=os.environ.get("OPENAI_BASE_URL"),
        )

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        # Dimensions are part of the identity: the same model truncated to
        # another size yields incomparable vectors.
        return f"{self.model}@{self._dimensions}"

    def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def embed_text(self, text: str) -> list[float]:
        response = await self._ensure_client().embeddings.create(
            input=text,
            model=self.model,
            dimensions=self._dimensions,
        )
        return response.data[0].embedding

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = await self._ensure_client().embeddings.create(
            input=texts,
            model=self.model,
            dimensions=self._dimensions,
        )
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

    async def close(self) -> None:
        """Close the OpenAI client."""
        if self._client:
            await self._client.close()
            self._client = None
