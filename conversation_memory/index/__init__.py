"""
Derived indexes over transcripts.

Provides:
- IndexStore: the shared SQLite file
- KeywordIndexer: FTS5 keyword search over turns
- VectorIndex: cosine search over abbreviation embeddings
"""

from .keyword import KeywordIndexer
from .store import IndexStore
from .vector import VectorIndex

__all__ = ["IndexStore", "KeywordIndexer", "VectorIndex"]
