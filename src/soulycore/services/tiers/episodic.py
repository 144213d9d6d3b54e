"""Episodic memory: conversations and their ordered turns.

Turns are ordered by an insertion sequence, so edits never reorder them.
Storing a turn longer than ``SUMMARY_WORD_THRESHOLD`` words hands it to
the summarizer as a supervised background task; the store call returns
before the summary exists and is unaffected by its failure.
"""

import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from ...interfaces import Conversation, IMemoryTier, Role, TierError, Turn, new_id
from ...utils import parse_timestamp, utc_now, word_count
from ..background import BackgroundTaskSupervisor
from ..sqlite_base import MEMORY_DB, SQLiteStore

logger = logging.getLogger(__name__)

SUMMARY_WORD_THRESHOLD = 500
DEFAULT_HISTORY_LIMIT = 50

Summarizer = Callable[[Turn], Awaitable[None]]


class EpisodicMemoryTier(SQLiteStore, IMemoryTier):
    """SQLite-backed conversation history."""

    name = "episodic"

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            system_prompt TEXT DEFAULT '',
            use_semantic_memory INTEGER NOT NULL DEFAULT 1,
            use_structured_memory INTEGER NOT NULL DEFAULT 1,
            use_graph_memory INTEGER NOT NULL DEFAULT 1,
            use_document_memory INTEGER NOT NULL DEFAULT 0,
            enable_memory_extraction INTEGER NOT NULL DEFAULT 1,
            model TEXT,
            temperature REAL,
            top_p REAL,
            created_at TEXT NOT NULL,
            last_updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS turns (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            conversation_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('user', 'model')),
            content TEXT NOT NULL,
            parent_turn_id TEXT,
            token_count INTEGER,
            response_time_ms REAL,
            is_bookmarked INTEGER NOT NULL DEFAULT 0,
            tags_json TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns(conversation_id, seq);
    """

    def __init__(
        self,
        db_path: Union[str, Path] = MEMORY_DB,
        background: Optional[BackgroundTaskSupervisor] = None,
        summarizer: Optional[Summarizer] = None,
    ):
        super().__init__(db_path)
        self.background = background or BackgroundTaskSupervisor()
        self.summarizer = summarizer

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(self, conversation: Optional[Conversation] = None, **fields) -> Conversation:
        """Insert a conversation (built from ``fields`` when none is given)."""
        conversation = conversation or Conversation(**fields)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO conversations (
                    id, title, system_prompt, use_semantic_memory, use_structured_memory,
                    use_graph_memory, use_document_memory, enable_memory_extraction,
                    model, temperature, top_p, created_at, last_updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.id, conversation.title, conversation.system_prompt,
                    int(conversation.use_semantic_memory),
                    int(conversation.use_structured_memory),
                    int(conversation.use_graph_memory),
                    int(conversation.use_document_memory),
                    int(conversation.enable_memory_extraction),
                    conversation.model, conversation.temperature, conversation.top_p,
                    conversation.created_at.isoformat(),
                    conversation.last_updated_at.isoformat(),
                ),
            )
            self._conn.commit()
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            title=row["title"],
            system_prompt=row["system_prompt"] or "",
            use_semantic_memory=bool(row["use_semantic_memory"]),
            use_structured_memory=bool(row["use_structured_memory"]),
            use_graph_memory=bool(row["use_graph_memory"]),
            use_document_memory=bool(row["use_document_memory"]),
            enable_memory_extraction=bool(row["enable_memory_extraction"]),
            model=row["model"],
            temperature=row["temperature"],
            top_p=row["top_p"],
            created_at=parse_timestamp(row["created_at"]),
            last_updated_at=parse_timestamp(row["last_updated_at"]),
        )

    # ------------------------------------------------------------------
    # Tier contract
    # ------------------------------------------------------------------

    async def store(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        id: Optional[str] = None,
        parent_turn_id: Optional[str] = None,
        token_count: Optional[int] = None,
        response_time_ms: Optional[float] = None,
    ) -> Turn:
        """Append a turn (or replace the content of ``id``) and touch the conversation."""
        if role not in ("user", "model"):
            raise TierError(f"Invalid turn role: {role!r}")

        now = utc_now()
        turn = Turn(
            id=id or new_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            parent_turn_id=parent_turn_id,
            token_count=token_count,
            response_time_ms=response_time_ms,
            created_at=now,
        )

        with self._lock:
            touched = self._conn.execute(
                "UPDATE conversations SET last_updated_at = ? WHERE id = ?",
                (now.isoformat(), conversation_id),
            )
            if touched.rowcount == 0:
                self._conn.rollback()
                raise TierError(f"Unknown conversation: {conversation_id}")
            self._conn.execute(
                """
                INSERT INTO turns (
                    id, conversation_id, role, content, parent_turn_id,
                    token_count, response_time_ms, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET content = excluded.content
                """,
                (
                    turn.id, conversation_id, role, content, parent_turn_id,
                    token_count, response_time_ms, now.isoformat(),
                ),
            )
            self._conn.commit()

        if self.summarizer is not None and word_count(content) > SUMMARY_WORD_THRESHOLD:
            logger.debug("Scheduling summary for turn %s", turn.id)
            self.background.spawn(self.summarizer(turn), name=f"summarize-{turn.id}")

        return turn

    async def query(self, conversation_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[Turn]:
        """Most recent ``limit`` turns, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM turns WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?",
                (conversation_id, limit),
            ).fetchall()
        return [self._row_to_turn(row) for row in reversed(rows)]

    async def delete(self, record_id: str, **params) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM turns WHERE id = ?", (record_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Turn metadata edits
    # ------------------------------------------------------------------

    async def update_turn(
        self,
        turn_id: str,
        content: Optional[str] = None,
        is_bookmarked: Optional[bool] = None,
        tags: Optional[list[str]] = None,
    ) -> Optional[Turn]:
        """Edit content, bookmark or tags; ordering is unchanged."""
        assignments = []
        values: list = []
        if content is not None:
            assignments.append("content = ?")
            values.append(content)
        if is_bookmarked is not None:
            assignments.append("is_bookmarked = ?")
            values.append(int(is_bookmarked))
        if tags is not None:
            assignments.append("tags_json = ?")
            values.append(json.dumps(tags))

        with self._lock:
            if assignments:
                self._conn.execute(
                    f"UPDATE turns SET {', '.join(assignments)} WHERE id = ?",
                    (*values, turn_id),
                )
                self._conn.commit()
            row = self._conn.execute("SELECT * FROM turns WHERE id = ?", (turn_id,)).fetchone()
        return self._row_to_turn(row) if row else None

    @staticmethod
    def _row_to_turn(row) -> Turn:
        return Turn(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            parent_turn_id=row["parent_turn_id"],
            token_count=row["token_count"],
            response_time_ms=row["response_time_ms"],
            is_bookmarked=bool(row["is_bookmarked"]),
            tags=json.loads(row["tags_json"] or "[]"),
            created_at=parse_timestamp(row["created_at"]),
        )
