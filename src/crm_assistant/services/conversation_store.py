"""Conversation and embedded-item persistence.

``SQLiteStore`` keeps conversations, turns and embedded items in one SQLite
file. ``InMemoryStore`` offers the same interface for tests and single-process
development.
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from loguru import logger

from crm_assistant.domain.models import (
    ContentType,
    Conversation,
    ConversationContext,
    ConversationSummary,
    ConversationTurn,
    EmbeddedItem,
    ItemMetadata,
    Sender,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS conversations (
    owner_id TEXT NOT NULL,
    id TEXT NOT NULL,
    title TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    summary_tokens INTEGER NOT NULL DEFAULT 0,
    unsummarized_start INTEGER NOT NULL DEFAULT 0,
    last_summarized_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (owner_id, id)
);

CREATE TABLE IF NOT EXISTS turns (
    owner_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    sender TEXT NOT NULL CHECK(sender IN ('user', 'assistant')),
    text TEXT NOT NULL,
    model_metadata TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (owner_id, conversation_id, seq),
    FOREIGN KEY (owner_id, conversation_id)
        REFERENCES conversations(owner_id, id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS embedded_items (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    content_type TEXT NOT NULL,
    text TEXT NOT NULL,
    embedding TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations(owner_id);
CREATE INDEX IF NOT EXISTS idx_embedded_items_entity ON embedded_items(owner_id, entity_id);
"""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _summary_row(conversation: Conversation) -> ConversationSummary:
    return ConversationSummary(
        conversation_id=conversation.conversation_id,
        title=conversation.title,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        message_count=len(conversation.turns),
        has_summary=conversation.context.is_summarized,
    )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Dictionary-backed store. Returns copies so callers cannot mutate stored state."""

    def __init__(self) -> None:
        self._conversations: dict[tuple[str, str], Conversation] = {}
        self._items: list[EmbeddedItem] = []
        self._lock = threading.Lock()

    def find_conversation(self, owner_id: str, conversation_id: str) -> Conversation | None:
        with self._lock:
            conversation = self._conversations.get((owner_id, conversation_id))
            return copy.deepcopy(conversation) if conversation else None

    def save_conversation(self, conversation: Conversation) -> None:
        with self._lock:
            key = (conversation.owner_id, conversation.conversation_id)
            self._conversations[key] = copy.deepcopy(conversation)

    def list_conversations(self, owner_id: str) -> list[ConversationSummary]:
        with self._lock:
            rows = [_summary_row(c) for (owner, _), c in self._conversations.items() if owner == owner_id]
        return sorted(rows, key=lambda r: r.updated_at, reverse=True)

    def delete_conversation(self, owner_id: str, conversation_id: str) -> bool:
        with self._lock:
            return self._conversations.pop((owner_id, conversation_id), None) is not None

    def find_embedded_items(self, owner_id: str, entity_id: str) -> list[EmbeddedItem]:
        with self._lock:
            return [i for i in self._items if i.owner_id == owner_id and i.entity_id == entity_id]

    def insert_embedded_item(self, item: EmbeddedItem) -> None:
        with self._lock:
            self._items.append(item)

    def delete_embedded_items(self, owner_id: str, entity_id: str) -> int:
        with self._lock:
            before = len(self._items)
            self._items = [
                i for i in self._items if not (i.owner_id == owner_id and i.entity_id == entity_id)
            ]
            return before - len(self._items)


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


class SQLiteStore:
    """Conversations and embedded items stored in a dedicated SQLite file.

    Turns are append-only: ``save_conversation`` inserts only turns beyond the
    ones already stored. The generation context is stored as the summary plus
    the index of the first unsummarized turn.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open (or create) the database and ensure the schema exists."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.executescript(_SCHEMA_SQL)
        self.conn.commit()
        logger.info("Conversation store ready at {}", self.db_path)

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def find_conversation(self, owner_id: str, conversation_id: str) -> Conversation | None:
        assert self.conn
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM conversations WHERE owner_id = ? AND id = ?",
                (owner_id, conversation_id),
            ).fetchone()
            if not row:
                return None
            turn_rows = self.conn.execute(
                "SELECT * FROM turns WHERE owner_id = ? AND conversation_id = ? ORDER BY seq ASC",
                (owner_id, conversation_id),
            ).fetchall()

        turns = [self._row_to_turn(r) for r in turn_rows]
        context = ConversationContext(
            summary=row["summary"],
            summary_token_count=row["summary_tokens"],
            unsummarized_turns=tuple(turns[row["unsummarized_start"] :]),
            last_summarized_at=_parse(row["last_summarized_at"]),
        )
        return Conversation(
            owner_id=row["owner_id"],
            conversation_id=row["id"],
            title=row["title"],
            turns=turns,
            context=context,
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )

    def save_conversation(self, conversation: Conversation) -> None:
        """Upsert the conversation row and append any new turns.

        Raises:
            ValueError: If the context's unsummarized turns are not a suffix
                of the turn log.
        """
        assert self.conn
        turns = conversation.turns
        context = conversation.context
        start = len(turns) - len(context.unsummarized_turns)
        if start < 0 or tuple(turns[start:]) != context.unsummarized_turns:
            raise ValueError("Unsummarized turns must be a suffix of the conversation turns")

        with self._lock:
            self.conn.execute(
                """
                INSERT INTO conversations (owner_id, id, title, summary, summary_tokens,
                    unsummarized_start, last_summarized_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, id) DO UPDATE SET
                    title = excluded.title,
                    summary = excluded.summary,
                    summary_tokens = excluded.summary_tokens,
                    unsummarized_start = excluded.unsummarized_start,
                    last_summarized_at = excluded.last_summarized_at,
                    updated_at = excluded.updated_at
                """,
                (
                    conversation.owner_id,
                    conversation.conversation_id,
                    conversation.title,
                    context.summary,
                    context.summary_token_count,
                    start,
                    _iso(context.last_summarized_at),
                    _iso(conversation.created_at),
                    _iso(conversation.updated_at),
                ),
            )
            stored = self.conn.execute(
                "SELECT COUNT(*) FROM turns WHERE owner_id = ? AND conversation_id = ?",
                (conversation.owner_id, conversation.conversation_id),
            ).fetchone()[0]
            self.conn.executemany(
                "INSERT INTO turns (owner_id, conversation_id, seq, sender, text, model_metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        conversation.owner_id,
                        conversation.conversation_id,
                        seq,
                        str(turn.sender),
                        turn.text,
                        json.dumps(turn.model_metadata) if turn.model_metadata is not None else None,
                        _iso(turn.timestamp),
                    )
                    for seq, turn in enumerate(turns[stored:], start=stored)
                ],
            )
            self.conn.commit()

    def list_conversations(self, owner_id: str) -> list[ConversationSummary]:
        """Return all conversations for an owner, newest first, with turn counts."""
        assert self.conn
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT c.id, c.title, c.summary, c.created_at, c.updated_at,
                       COUNT(t.seq) AS message_count
                FROM conversations c
                LEFT JOIN turns t ON t.owner_id = c.owner_id AND t.conversation_id = c.id
                WHERE c.owner_id = ?
                GROUP BY c.owner_id, c.id
                ORDER BY c.updated_at DESC
                """,
                (owner_id,),
            ).fetchall()
        return [
            ConversationSummary(
                conversation_id=row["id"],
                title=row["title"],
                created_at=_parse(row["created_at"]),
                updated_at=_parse(row["updated_at"]),
                message_count=row["message_count"],
                has_summary=bool(row["summary"]),
            )
            for row in rows
        ]

    def delete_conversation(self, owner_id: str, conversation_id: str) -> bool:
        assert self.conn
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM conversations WHERE owner_id = ? AND id = ?",
                (owner_id, conversation_id),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Embedded items
    # ------------------------------------------------------------------

    def find_embedded_items(self, owner_id: str, entity_id: str) -> list[EmbeddedItem]:
        assert self.conn
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM embedded_items WHERE owner_id = ? AND entity_id = ?",
                (owner_id, entity_id),
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def insert_embedded_item(self, item: EmbeddedItem) -> None:
        assert self.conn
        metadata = {
            "source": item.metadata.source,
            "tags": list(item.metadata.tags),
            "importance": item.metadata.importance,
            "timestamp": _iso(item.metadata.timestamp),
        }
        with self._lock:
            self.conn.execute(
                "INSERT INTO embedded_items (id, owner_id, entity_id, content_type, text, embedding, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    item.id,
                    item.owner_id,
                    item.entity_id,
                    str(item.content_type),
                    item.text,
                    json.dumps(list(item.embedding)),
                    json.dumps(metadata),
                ),
            )
            self.conn.commit()

    def delete_embedded_items(self, owner_id: str, entity_id: str) -> int:
        assert self.conn
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM embedded_items WHERE owner_id = ? AND entity_id = ?",
                (owner_id, entity_id),
            )
            self.conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_turn(row: sqlite3.Row) -> ConversationTurn:
        metadata = row["model_metadata"]
        return ConversationTurn(
            sender=Sender(row["sender"]),
            text=row["text"],
            timestamp=_parse(row["created_at"]),
            model_metadata=json.loads(metadata) if metadata else None,
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> EmbeddedItem:
        metadata = json.loads(row["metadata"] or "{}")
        return EmbeddedItem(
            id=row["id"],
            owner_id=row["owner_id"],
            entity_id=row["entity_id"],
            content_type=ContentType(row["content_type"]),
            text=row["text"],
            embedding=tuple(json.loads(row["embedding"])),
            metadata=ItemMetadata(
                source=metadata.get("source", ""),
                tags=tuple(metadata.get("tags", ())),
                importance=metadata.get("importance", 1.0),
                timestamp=_parse(metadata.get("timestamp")),
            ),
        )
