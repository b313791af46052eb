"""
Vector index over conversation abbreviations.

One embedding per conversation, searched by brute-force numpy cosine
similarity. The index is versioned by embedding model: vectors from two
different models are never compared. When the configured model changes,
every vector is dropped and conversations are flagged for re-embedding.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

import numpy as np

from ..models import AbbreviationRecord, SearchFilters, VectorHit
from .store import IndexStore, filter_clause

logger = logging.getLogger(__name__)

MODEL_KEY = "embedding_model"
DIMENSIONS_KEY = "embedding_dimensions"


class VectorIndex:
    """Abbreviation vectors stored in the shared index store."""

    def __init__(self, store: IndexStore):
        self.store = store
        self.model_name: str | None = None
        self.dimensions: int | None = None
        self._reset_hooks: list[Callable[[], Any]] = []

    def add_reset_hook(self, hook: Callable[[], Any]) -> None:
        """Register a callback run after vectors are dropped for a new model.

        Caches derived from the old vectors (query embeddings) hook in here.
        """
        self._reset_hooks.append(hook)

    async def ensure_model(self, model_name: str, dimensions: int) -> bool:
        """Pin the index to an embedding model.

        Returns:
            True if stored vectors belonged to another model and were dropped.
        """
        stored_model = await self.store.get_meta(MODEL_KEY)
        stored_dims = await self.store.get_meta(DIMENSIONS_KEY)
        self.model_name = model_name
        self.dimensions = dimensions

        reset = stored_model is not None and (
            stored_model != model_name or stored_dims != str(dimensions)
        )
        if reset:
            logger.warning(
                "Embedding model changed (%s/%s -> %s/%s), dropping vectors",
                stored_model,
                stored_dims,
                model_name,
                dimensions,
            )
            await self.reset()

        if reset or stored_model is None:
            await self.store.set_meta({MODEL_KEY: model_name, DIMENSIONS_KEY: str(dimensions)})
        return reset

    async def reset(self) -> int:
        """Drop every vector and flag all conversations for re-embedding."""
        deleted = await self.store.delete_all_vectors()
        flagged = await self.store.flag_all_for_abbreviation()
        for hook in self._reset_hooks:
            hook()
        logger.info("Vector index reset: %d vectors dropped, %d conversations flagged", deleted, flagged)
        return deleted

    async def upsert(self, record: AbbreviationRecord) -> None:
        """Store a record together with its conversation's abbreviation text."""
        await self.store.save_abbreviation(record.conversation_id, record.text, record)

    async def count(self) -> int:
        row = await self.store.fetchone("SELECT COUNT(*) FROM abbreviations")
        return row[0] if row else 0

    async def has_vector(self, conversation_id: str) -> bool:
        row = await self.store.fetchone(
            "SELECT 1 FROM abbreviations WHERE conversation_id = ?", (conversation_id,)
        )
        return row is not None

    async def search(
        self,
        query_vector: list[float],
        filters: SearchFilters | None = None,
        limit: int = 50,
        min_similarity: float | None = None,
    ) -> list[VectorHit]:
        """Rank conversations by cosine similarity to a query vector.

        Args:
            query_vector: Embedding of the query
            filters: Optional conversation filters
            limit: Number of results to return
            min_similarity: Drop matches at or below this similarity

        Returns:
            Hits sorted by similarity, highest first.
        """
        where, params = filter_clause(filters)
        if self.model_name is not None:
            where.append("a.embedding_model = ?")
            params.append(self.model_name)
        where.append("a.dimensions = ?")
        params.append(len(query_vector))

        rows = await self.store.fetchall(
            f"""
            SELECT a.conversation_id, a.vector_json, a.text
            FROM abbreviations a
            JOIN conversations c ON c.id = a.conversation_id
            WHERE {" AND ".join(where)}
            """,
            params,
        )
        if not rows:
            return []

        # Compute similarities with numpy
        query_np = np.asarray(query_vector, dtype=np.float64)
        query_norm = np.linalg.norm(query_np)
        if query_norm == 0:
            return []

        matrix = np.asarray([json.loads(row[1]) for row in rows], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms == 0, 0.0, matrix @ query_np / (norms * query_norm))

        hits = [
            VectorHit(conversation_id=row[0], similarity=float(sim), text=row[2])
            for row, sim in zip(rows, sims, strict=True)
            if min_similarity is None or sim > min_similarity
        ]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:limit]
