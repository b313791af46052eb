"""
Shared SQLite index store.

One database file holds every derived projection of the transcripts:

- ``conversations``: conversation metadata rows
- ``index_rows`` + ``turns_fts``: keyword-searchable turns (FTS5, external content)
- ``abbreviations``: one abbreviation vector per conversation
- ``index_meta``: key/value settings such as the embedding model in use

Nothing in here is authoritative. Dropping the file and running recovery
rebuilds it from the transcripts.

A single aiosqlite connection is shared. All statements go through
``transaction()``, ``fetchone()`` or ``fetchall()``, which serialize on one
asyncio lock so a multi-statement write is never observed half-done.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import BackendUnavailableError, StorageConnectionError, StorageIOError
from ..models import AbbreviationRecord, Conversation, SearchFilters, parse_timestamp

logger = logging.getLogger(__name__)


# =============================================================================
# Column Definitions
# =============================================================================

CONVERSATION_COLUMNS = (
    "id",
    "channel",
    "title",
    "topics",
    "created",
    "updated",
    "turn_count",
    "participants",
    "abbreviation",
    "needs_abbreviation",
    "manually_named",
    "last_renamed_at_turn",
)

_SELECT_CONVERSATION = f"SELECT {', '.join(CONVERSATION_COLUMNS)} FROM conversations"

_CREATE_FTS_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS turns_fts USING fts5(
    text,
    content='index_rows',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS index_rows_ai
    AFTER INSERT ON index_rows BEGIN
        INSERT INTO turns_fts(rowid, text) VALUES (new.rowid, new.text);
    END;

CREATE TRIGGER IF NOT EXISTS index_rows_ad
    AFTER DELETE ON index_rows BEGIN
        INSERT INTO turns_fts(turns_fts, rowid, text) VALUES ('delete', old.rowid, old.text);
    END;

CREATE TRIGGER IF NOT EXISTS index_rows_au
    AFTER UPDATE ON index_rows BEGIN
        INSERT INTO turns_fts(turns_fts, rowid, text) VALUES ('delete', old.rowid, old.text);
        INSERT INTO turns_fts(rowid, text) VALUES (new.rowid, new.text);
    END;
"""


def _row_to_conversation(row: Any) -> Conversation:
    return Conversation(
        id=row[0],
        channel=row[1],
        title=row[2],
        topics=json.loads(row[3]) if row[3] else [],
        created=parse_timestamp(row[4]),
        updated=parse_timestamp(row[5]),
        turn_count=row[6] or 0,
        participants=json.loads(row[7]) if row[7] else [],
        abbreviation=row[8],
        needs_abbreviation=bool(row[9]),
        manually_named=bool(row[10]),
        last_renamed_at_turn=row[11],
    )


class IndexStore:
    """
    SQLite file backing the keyword index, vector index and conversation table.

    Features:
    - FTS5 with porter stemming when the SQLite build supports it
    - Plain-table fallback when it does not (keyword search uses LIKE)
    - Atomic abbreviation writes (text and vector together or not at all)
    """

    def __init__(self, db_path: str | Path, use_fts: bool = True):
        self.db_path = db_path
        self.conn: aiosqlite.Connection | None = None
        self.fts_available = False
        self._use_fts = use_fts
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, db_path: str | Path, use_fts: bool = True) -> IndexStore:
        """Create and initialize a store."""
        store = cls(db_path, use_fts=use_fts)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self.conn is not None:
            return

        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self.conn = await aiosqlite.connect(str(self.db_path))
            await self.conn.execute("PRAGMA journal_mode = WAL")

            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT NOT NULL PRIMARY KEY,
                    channel TEXT NOT NULL,
                    title TEXT,
                    topics TEXT,
                    created TEXT NOT NULL,
                    updated TEXT NOT NULL,
                    turn_count INTEGER NOT NULL DEFAULT 0,
                    participants TEXT,
                    abbreviation TEXT,
                    needs_abbreviation INTEGER NOT NULL DEFAULT 0,
                    manually_named INTEGER NOT NULL DEFAULT 0,
                    last_renamed_at_turn INTEGER
                )
            """)

            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS index_rows (
                    row_id TEXT NOT NULL PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    turn_number INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    text TEXT NOT NULL
                )
            """)

            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS abbreviations (
                    conversation_id TEXT NOT NULL PRIMARY KEY,
                    text TEXT NOT NULL,
                    vector_json TEXT NOT NULL,
                    embedding_model TEXT NOT NULL,
                    dimensions INTEGER NOT NULL,
                    generated_at TEXT NOT NULL
                )
            """)

            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS index_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)

            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_updated "
                "ON conversations(channel, updated DESC)"
            )
            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_index_rows_conversation "
                "ON index_rows(conversation_id, turn_number)"
            )

            if self._use_fts:
                try:
                    await self.conn.executescript(_CREATE_FTS_SQL)
                    self.fts_available = True
                except sqlite3.OperationalError as e:
                    logger.warning("%s", BackendUnavailableError("fts5", str(e)))
                    self.fts_available = False

            await self.conn.commit()
            logger.info(
                "Index store initialized: %s (fts5=%s)", self.db_path, self.fts_available
            )

        except (sqlite3.Error, OSError) as e:
            if self.conn is not None:
                await self.conn.close()
                self.conn = None
            raise StorageConnectionError(str(self.db_path), e) from e

    async def close(self) -> None:
        """Close the SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageIOError(operation, cause=RuntimeError("Not initialized"))
        return self.conn

    # =========================================================================
    # Statement helpers
    # =========================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements atomically; commits on exit, rolls back on error."""
        conn = self._require_conn("transaction")
        async with self._lock:
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def fetchall(self, sql: str, params: tuple | list = ()) -> list[Any]:
        conn = self._require_conn("fetchall")
        async with self._lock:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def fetchone(self, sql: str, params: tuple | list = ()) -> Any:
        conn = self._require_conn("fetchone")
        async with self._lock:
            async with conn.execute(sql, params) as cursor:
                return await cursor.fetchone()

    # =========================================================================
    # index_meta
    # =========================================================================

    async def get_meta(self, key: str) -> str | None:
        row = await self.fetchone("SELECT value FROM index_meta WHERE key = ?", (key,))
        return row[0] if row else None

    async def set_meta(self, values: dict[str, str]) -> None:
        async with self.transaction() as conn:
            for key, value in values.items():
                await conn.execute(
                    """
                    INSERT INTO index_meta (key, value) VALUES (?, ?)
                    ON CONFLICT (key) DO UPDATE SET value = excluded.value
                    """,
                    (key, value),
                )

    # =========================================================================
    # Conversations
    # =========================================================================

    async def upsert_conversation(self, conversation: Conversation) -> None:
        """Insert or fully replace a conversation row."""
        async with self.transaction() as conn:
            await conn.execute(
                f"""
                INSERT INTO conversations ({", ".join(CONVERSATION_COLUMNS)})
                VALUES ({", ".join("?" for _ in CONVERSATION_COLUMNS)})
                ON CONFLICT (id) DO UPDATE SET
                    channel = excluded.channel,
                    title = excluded.title,
                    topics = excluded.topics,
                    created = excluded.created,
                    updated = excluded.updated,
                    turn_count = excluded.turn_count,
                    participants = excluded.participants,
                    abbreviation = excluded.abbreviation,
                    needs_abbreviation = excluded.needs_abbreviation,
                    manually_named = excluded.manually_named,
                    last_renamed_at_turn = excluded.last_renamed_at_turn
                """,
                (
                    conversation.id,
                    conversation.channel,
                    conversation.title,
                    json.dumps(conversation.topics),
                    conversation.created.isoformat(),
                    conversation.updated.isoformat(),
                    conversation.turn_count,
                    json.dumps(conversation.participants),
                    conversation.abbreviation,
                    int(conversation.needs_abbreviation),
                    int(conversation.manually_named),
                    conversation.last_renamed_at_turn,
                ),
            )

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = await self.fetchone(f"{_SELECT_CONVERSATION} WHERE id = ?", (conversation_id,))
        return _row_to_conversation(row) if row else None

    async def get_conversations(self, conversation_ids: list[str]) -> dict[str, Conversation]:
        """Fetch several conversations keyed by id. Unknown ids are absent."""
        if not conversation_ids:
            return {}
        placeholders = ", ".join("?" for _ in conversation_ids)
        rows = await self.fetchall(
            f"{_SELECT_CONVERSATION} WHERE id IN ({placeholders})", list(conversation_ids)
        )
        return {row[0]: _row_to_conversation(row) for row in rows}

    async def list_conversations(
        self, channel: str | None = None, limit: int | None = None
    ) -> list[Conversation]:
        """List conversations, most recently updated first."""
        sql = _SELECT_CONVERSATION
        params: list[Any] = []
        if channel:
            sql += " WHERE channel = ?"
            params.append(channel)
        sql += " ORDER BY updated DESC, id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self.fetchall(sql, params)
        return [_row_to_conversation(row) for row in rows]

    async def record_activity(
        self, conversation_id: str, turn_count: int, updated: datetime
    ) -> None:
        """Record the turn count and last activity time after an append."""
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE conversations SET turn_count = ?, updated = ? WHERE id = ?",
                (turn_count, updated.isoformat(), conversation_id),
            )

    async def set_title(
        self,
        conversation_id: str,
        title: str,
        topics: list[str] | None,
        *,
        manual: bool,
        at_turn: int,
    ) -> bool:
        """Set the title.

        A manual title locks out automatic renaming from then on; an
        automatic title is only written while the conversation has none
        set manually.

        Returns:
            True if the row was updated.
        """
        assignments = ["title = ?", "last_renamed_at_turn = ?", "manually_named = MAX(manually_named, ?)"]
        params: list[Any] = [title, at_turn, int(manual)]
        if topics is not None:
            assignments.append("topics = ?")
            params.append(json.dumps(topics))

        sql = f"UPDATE conversations SET {', '.join(assignments)} WHERE id = ?"
        params.append(conversation_id)
        if not manual:
            sql += " AND manually_named = 0"

        async with self.transaction() as conn:
            cursor = await conn.execute(sql, params)
            return cursor.rowcount > 0

    async def set_needs_abbreviation(self, conversation_id: str, needs: bool) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE conversations SET needs_abbreviation = ? WHERE id = ?",
                (int(needs), conversation_id),
            )

    async def flag_all_for_abbreviation(self) -> int:
        """Flag every conversation with turns. Returns the number flagged."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE conversations SET needs_abbreviation = 1 WHERE turn_count > 0"
            )
            return cursor.rowcount

    async def conversations_needing_abbreviation(self) -> list[str]:
        """Conversations with turns that are flagged or have no abbreviation vector."""
        rows = await self.fetchall(
            """
            SELECT c.id FROM conversations c
            LEFT JOIN abbreviations a ON a.conversation_id = c.id
            WHERE c.turn_count > 0
              AND (c.needs_abbreviation = 1 OR a.conversation_id IS NULL)
            ORDER BY c.updated ASC
            """
        )
        return [row[0] for row in rows]

    async def flagged_conversations(self) -> list[str]:
        rows = await self.fetchall(
            "SELECT id FROM conversations WHERE needs_abbreviation = 1 ORDER BY updated ASC"
        )
        return [row[0] for row in rows]

    # =========================================================================
    # Abbreviations
    # =========================================================================

    async def save_abbreviation(
        self,
        conversation_id: str,
        text: str,
        record: AbbreviationRecord | None,
        needs_abbreviation: bool | None = None,
    ) -> None:
        """Store an abbreviation in one transaction.

        With a record, the vector row is replaced and the conversation is
        unflagged. Without one (embedding failed), only the text is stored
        and the conversation stays flagged for a later retry, unless
        ``needs_abbreviation`` says otherwise.
        """
        if needs_abbreviation is None:
            needs_abbreviation = record is None
        async with self.transaction() as conn:
            if record is not None:
                await conn.execute(
                    """
                    INSERT INTO abbreviations (
                        conversation_id, text, vector_json, embedding_model,
                        dimensions, generated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (conversation_id) DO UPDATE SET
                        text = excluded.text,
                        vector_json = excluded.vector_json,
                        embedding_model = excluded.embedding_model,
                        dimensions = excluded.dimensions,
                        generated_at = excluded.generated_at
                    """,
                    (
                        record.conversation_id,
                        record.text,
                        json.dumps(record.vector),
                        record.embedding_model,
                        len(record.vector),
                        record.generated_at.isoformat(),
                    ),
                )
            await conn.execute(
                "UPDATE conversations SET abbreviation = ?, needs_abbreviation = ? WHERE id = ?",
                (text, int(needs_abbreviation), conversation_id),
            )

    async def delete_all_vectors(self) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute("DELETE FROM abbreviations")
            return cursor.rowcount


def filter_clause(filters: SearchFilters | None, alias: str = "c") -> tuple[list[str], list[Any]]:
    """WHERE fragments for ``SearchFilters`` against the conversations table."""
    where: list[str] = []
    params: list[Any] = []
    if filters is None:
        return where, params

    if filters.channel:
        where.append(f"{alias}.channel = ?")
        params.append(filters.channel)
    if filters.start_date:
        where.append(f"{alias}.updated >= ?")
        params.append(filters.start_date)
    if filters.end_date:
        where.append(f"{alias}.updated <= ?")
        params.append(filters.end_date)
    if filters.conversation_ids:
        placeholders = ", ".join("?" for _ in filters.conversation_ids)
        where.append(f"{alias}.id IN ({placeholders})")
        params.extend(filters.conversation_ids)
    return where, params
