"""
LRU cache for query embeddings.

Search embeds the same queries repeatedly; caching them saves an API call
per repeat. Entries are keyed by model and text, and the owner clears the
cache explicitly when the vector index moves to another model.
"""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from typing import Any


class EmbeddingCache:
    """
    LRU cache for embedding vectors.

    Features:
    - Least Recently Used eviction
    - Content-based keying (hash of model and text)
    - Explicit invalidation of single entries or everything
    - Hit/miss counters
    """

    def __init__(self, max_entries: int = 256):
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")

        self.max_entries = max_entries
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _make_key(text: str, model_name: str) -> str:
        return hashlib.sha256(f"{model_name}:{text}".encode()).hexdigest()

    def get(self, text: str, model_name: str) -> list[float] | None:
        """Cached embedding, or None. A hit marks the entry most recently used."""
        key = self._make_key(text, model_name)
        vector = self._cache.get(key)
        if vector is None:
            self.misses += 1
            return None
        self._cache.move_to_end(key)
        self.hits += 1
        return vector

    def put(self, text: str, model_name: str, embedding: list[float]) -> None:
        """Store an embedding, evicting the least recently used entry when full."""
        key = self._make_key(text, model_name)
        self._cache[key] = embedding
        self._cache.move_to_end(key)
        if len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)

    def invalidate(self, text: str, model_name: str) -> bool:
        """Drop one entry. Returns True if it was cached."""
        return self._cache.pop(self._make_key(text, model_name), None) is not None

    def clear(self) -> None:
        """Clear all cached embeddings."""
        self._cache.clear()

    def size(self) -> int:
        return len(self._cache)

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._cache),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }
