"""
Hybrid conversation search with Reciprocal Rank Fusion.

Two independent retrievals each produce a ranked list of conversations:

- semantic: cosine similarity between the query embedding and every
  conversation's abbreviation vector
- keyword: FTS5 bm25 over turns, one best row per conversation

The lists are merged with ``score(c) = sum(1 / (k + rank))`` over the lists
that contain ``c`` (ranks start at 1). Scores are not blended or boosted;
appearing in both lists is what lifts a conversation. Ties go to the most
recently updated conversation.

Search never raises for backend trouble. Without vectors, without an
embedder, or when embedding the query fails, the result is keyword-only.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from .config import MemoryConfig
from .embeddings import EmbeddingCache, EmbeddingProvider
from .index.keyword import KeywordIndexer, query_terms
from .index.store import IndexStore
from .index.vector import VectorIndex
from .models import ConversationMatch, KeywordHit, SearchFilters, VectorHit

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200
SNIPPET_LEAD = 30

SOURCE_SEMANTIC = "semantic"
SOURCE_KEYWORD = "keyword"


def rrf_fuse(ranked_lists: dict[str, list[str]], k: int = 60) -> dict[str, float]:
    """Reciprocal Rank Fusion over named ranked id lists.

    Returns:
        Score per id (higher is better).
    """
    scores: dict[str, float] = defaultdict(float)
    for ids in ranked_lists.values():
        for rank, item_id in enumerate(ids, start=1):
            scores[item_id] += 1.0 / (k + rank)
    return dict(scores)


def extract_snippet(text: str, query: str, max_length: int = SNIPPET_LENGTH) -> str:
    """Cut a window of ``text`` starting shortly before the first query term."""
    text_lower = text.lower()
    start = 0
    for term in query_terms(query):
        index = text_lower.find(term)
        if index != -1:
            start = max(0, index - SNIPPET_LEAD)
            break

    snippet = text[start : start + max_length].strip()
    if start > 0:
        snippet = "..." + snippet
    if start + max_length < len(text):
        snippet = snippet + "..."
    return snippet


class SearchFusion:
    """Runs keyword and semantic retrieval and fuses the rankings."""

    def __init__(
        self,
        keyword: KeywordIndexer,
        vectors: VectorIndex,
        store: IndexStore,
        config: MemoryConfig,
        embedder: EmbeddingProvider | None = None,
    ):
        self.keyword = keyword
        self.vectors = vectors
        self.store = store
        self.config = config
        self.embedder = embedder
        self.query_cache = EmbeddingCache(max_entries=config.query_cache_size)
        vectors.add_reset_hook(self.query_cache.clear)

    async def search(self, query: str, filters: SearchFilters | None = None) -> list[ConversationMatch]:
        """Search conversations.

        Args:
            query: Free-text query
            filters: Optional channel, date range, conversation and limit filters

        Returns:
            Matches ordered by fused score, best first.
        """
        if not query or not query.strip():
            return []

        limit = (filters.limit if filters and filters.limit else None) or self.config.search_limit

        keyword_hits = await self._keyword(query, filters)
        vector_hits = await self._semantic(query, filters)

        keyword_by_id = {hit.conversation_id: hit for hit in keyword_hits}
        vector_by_id = {hit.conversation_id: hit for hit in vector_hits}

        scores = rrf_fuse(
            {
                SOURCE_SEMANTIC: [hit.conversation_id for hit in vector_hits],
                SOURCE_KEYWORD: [hit.conversation_id for hit in keyword_hits],
            },
            k=self.config.rrf_k,
        )
        if not scores:
            return []

        conversations = await self.store.get_conversations(list(scores))
        ranked = sorted(
            (cid for cid in scores if cid in conversations),
            key=lambda cid: (-scores[cid], -conversations[cid].updated.timestamp(), cid),
        )

        matches = []
        for cid in ranked[:limit]:
            conversation = conversations[cid]
            keyword_hit = keyword_by_id.get(cid)
            vector_hit = vector_by_id.get(cid)

            sources = []
            if vector_hit is not None:
                sources.append(SOURCE_SEMANTIC)
            if keyword_hit is not None:
                sources.append(SOURCE_KEYWORD)

            matches.append(
                ConversationMatch(
                    conversation_id=cid,
                    score=scores[cid],
                    sources=sources,
                    snippet=self._snippet(query, keyword_hit, vector_hit),
                    updated=conversation.updated,
                    title=conversation.title,
                    channel=conversation.channel,
                    turn_number=keyword_hit.turn_number if keyword_hit else None,
                )
            )
        return matches

    async def _keyword(self, query: str, filters: SearchFilters | None) -> list[KeywordHit]:
        try:
            return await self.keyword.search(query, filters, limit=self.config.candidate_limit)
        except Exception as e:
            logger.warning("Keyword search failed, continuing without it: %s", e)
            return []

    async def _semantic(self, query: str, filters: SearchFilters | None) -> list[VectorHit]:
        if self.embedder is None:
            return []
        try:
            if await self.vectors.count() == 0:
                return []
            vector = await self._embed_query(self.embedder, query)
            return await self.vectors.search(
                vector,
                filters,
                limit=self.config.candidate_limit,
                min_similarity=self.config.min_similarity,
            )
        except Exception as e:
            logger.warning("Semantic search unavailable, using keyword results only: %s", e)
            return []

    async def _embed_query(self, embedder: EmbeddingProvider, query: str) -> list[float]:
        model = embedder.model_name
        cached = self.query_cache.get(query, model)
        if cached is not None:
            return cached
        vector = await embedder.embed_text(query)
        self.query_cache.put(query, model, vector)
        return vector

    @staticmethod
    def _snippet(query: str, keyword_hit: KeywordHit | None, vector_hit: VectorHit | None) -> str:
        if keyword_hit is not None:
            return extract_snippet(keyword_hit.text, query)
        if vector_hit is not None:
            return extract_snippet(vector_hit.text, query)
        return ""
