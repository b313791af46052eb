"""
Keyword index over transcript turns.

Every turn becomes one ``index_rows`` row whose text is prefixed with the
speaker ("User: ..." / "Assistant: ..."). With FTS5 the rows are ranked by
``bm25()``; without it search falls back to LIKE matching ranked by how
many query terms a row contains.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Any

from ..exceptions import IndexDriftError, StorageIOError
from ..id_utils import index_row_id, parse_index_row_id
from ..models import IndexRow, KeywordHit, SearchFilters, TranscriptTurn
from .store import IndexStore, filter_clause

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r"\w+", re.UNICODE)

_INSERT_ROW_SQL = """
    INSERT OR IGNORE INTO index_rows (
        row_id, conversation_id, turn_number, role, timestamp, text
    ) VALUES (?, ?, ?, ?, ?, ?)
"""


def query_terms(query: str) -> list[str]:
    """Lowercased word terms of a query, deduplicated, in order."""
    seen: dict[str, None] = {}
    for term in _TERM_RE.findall(query.lower()):
        seen.setdefault(term, None)
    return list(seen)


def build_match_query(query: str) -> str | None:
    """Turn free text into a safe FTS5 MATCH expression.

    Each term is double-quoted so FTS5 operators and column filters in user
    input are treated as plain words. Terms are OR-joined; bm25 rewards
    rows that match more of them.
    """
    terms = query_terms(query)
    if not terms:
        return None
    return " OR ".join(f'"{term}"' for term in terms)


def _row_params(row: IndexRow) -> tuple[Any, ...]:
    return (
        index_row_id(row.conversation_id, row.turn_number, row.role.value),
        row.conversation_id,
        row.turn_number,
        row.role.value,
        row.timestamp.isoformat(),
        row.text,
    )


class KeywordIndexer:
    """Synchronous keyword index maintained on every append."""

    def __init__(self, store: IndexStore):
        self.store = store

    @property
    def degraded(self) -> bool:
        """True when FTS5 is unavailable and LIKE matching is used."""
        return not self.store.fts_available

    async def on_turn_appended(self, conversation_id: str, turn: TranscriptTurn) -> bool:
        """Index a turn that was just written to the transcript.

        Failures are logged, not raised: the transcript already holds the
        turn and recovery re-indexes anything missing.

        Returns:
            True if the row is in the index afterwards.
        """
        row = IndexRow.from_turn(conversation_id, turn)
        try:
            async with self.store.transaction() as conn:
                await conn.execute(_INSERT_ROW_SQL, _row_params(row))
            return True
        except (sqlite3.Error, StorageIOError) as e:
            logger.warning(
                "%s: failed to index turn %d (%s): %s",
                IndexDriftError.__name__,
                turn.turn_number,
                conversation_id,
                e,
            )
            return False

    async def reindex(self, conversation_id: str, turns: list[TranscriptTurn]) -> int:
        """Insert rows for turns not yet indexed.

        Returns:
            Number of rows added
        """
        added = 0
        async with self.store.transaction() as conn:
            for turn in turns:
                cursor = await conn.execute(
                    _INSERT_ROW_SQL, _row_params(IndexRow.from_turn(conversation_id, turn))
                )
                added += max(cursor.rowcount, 0)
        return added

    async def indexed_keys(self, conversation_id: str) -> set[tuple[int, str]]:
        """(turn_number, role) pairs present in the index for a conversation."""
        rows = await self.store.fetchall(
            "SELECT row_id FROM index_rows WHERE conversation_id = ?", (conversation_id,)
        )
        keys = set()
        for (row_id,) in rows:
            _, turn_number, role = parse_index_row_id(row_id)
            keys.add((turn_number, role))
        return keys

    async def row_count(self, conversation_id: str) -> int:
        row = await self.store.fetchone(
            "SELECT COUNT(*) FROM index_rows WHERE conversation_id = ?", (conversation_id,)
        )
        return row[0] if row else 0

    # =========================================================================
    # Search
    # =========================================================================

    async def search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 50,
    ) -> list[KeywordHit]:
        """Rank conversations by their best-matching turn.

        Returns:
            At most ``limit`` hits, one per conversation, best first.
        """
        if self.store.fts_available:
            return await self._fts_search(query, filters, limit)
        return await self._like_search(query, filters, limit)

    async def _fts_search(
        self, query: str, filters: SearchFilters | None, limit: int
    ) -> list[KeywordHit]:
        match = build_match_query(query)
        if match is None:
            return []

        where, params = filter_clause(filters)
        where.insert(0, "turns_fts MATCH ?")
        params.insert(0, match)

        # bm25() is lower-is-better; MIN() picks each conversation's best row
        # and SQLite fills the bare columns from that same row.
        sql = f"""
            SELECT conversation_id, turn_number, role, text, timestamp, MIN(score) AS best
            FROM (
                SELECT r.conversation_id, r.turn_number, r.role, r.text, r.timestamp,
                       bm25(turns_fts) AS score
                FROM turns_fts
                JOIN index_rows r ON r.rowid = turns_fts.rowid
                JOIN conversations c ON c.id = r.conversation_id
                WHERE {" AND ".join(where)}
            )
            GROUP BY conversation_id
            ORDER BY best ASC, timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        rows = await self.store.fetchall(sql, params)
        return [
            KeywordHit(
                conversation_id=row[0],
                turn_number=row[1],
                role=row[2],
                text=row[3],
                timestamp=row[4],
                rank_score=-float(row[5]),
            )
            for row in rows
        ]

    async def _like_search(
        self, query: str, filters: SearchFilters | None, limit: int
    ) -> list[KeywordHit]:
        terms = query_terms(query)
        if not terms:
            return []

        where, params = filter_clause(filters)
        likes = []
        for term in terms:
            likes.append("LOWER(r.text) LIKE ? ESCAPE '\\'")
            escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params.append(f"%{escaped}%")
        where.append(f"({' OR '.join(likes)})")

        sql = f"""
            SELECT r.conversation_id, r.turn_number, r.role, r.text, r.timestamp
            FROM index_rows r
            JOIN conversations c ON c.id = r.conversation_id
            WHERE {" AND ".join(where)}
        """
        rows = await self.store.fetchall(sql, params)

        best: dict[str, KeywordHit] = {}
        for row in rows:
            text_lower = row[3].lower()
            hits = sum(1 for term in terms if term in text_lower)
            candidate = KeywordHit(
                conversation_id=row[0],
                turn_number=row[1],
                role=row[2],
                text=row[3],
                timestamp=row[4],
                rank_score=float(hits),
            )
            current = best.get(row[0])
            if current is None or (candidate.rank_score, candidate.timestamp) > (
                current.rank_score,
                current.timestamp,
            ):
                best[row[0]] = candidate

        ranked = sorted(best.values(), key=lambda h: (h.rank_score, h.timestamp), reverse=True)
        return ranked[:limit]
