"""Document memory: an archive of unstructured JSON payloads."""

import json
from typing import Any, Optional

from ...interfaces import DocumentRecord, IMemoryTier, new_id
from ...utils import parse_timestamp, utc_now
from ..sqlite_base import SQLiteStore

DEFAULT_DOCUMENT_TYPE = "generic"
DEFAULT_QUERY_LIMIT = 10


class DocumentMemoryTier(SQLiteStore, IMemoryTier):
    name = "document"

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS documents (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            doc_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_documents_type ON documents(doc_type, seq);
    """

    async def store(
        self,
        data: dict[str, Any],
        type: str = DEFAULT_DOCUMENT_TYPE,
        id: Optional[str] = None,
    ) -> DocumentRecord:
        record = DocumentRecord(id=id or new_id(), doc_type=type or DEFAULT_DOCUMENT_TYPE, data=data)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO documents (id, doc_type, payload_json, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    doc_type = excluded.doc_type,
                    payload_json = excluded.payload_json
                """,
                (record.id, record.doc_type, json.dumps(data, default=str),
                 record.created_at.isoformat()),
            )
            self._conn.commit()
        return record

    async def query(self, type: Optional[str] = None, limit: int = DEFAULT_QUERY_LIMIT) -> list[DocumentRecord]:
        """Newest documents first, optionally of one type."""
        with self._lock:
            if type:
                rows = self._conn.execute(
                    "SELECT * FROM documents WHERE doc_type = ? ORDER BY seq DESC LIMIT ?",
                    (type, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM documents ORDER BY seq DESC LIMIT ?", (limit,)
                ).fetchall()
        return [
            DocumentRecord(
                id=r["id"],
                doc_type=r["doc_type"],
                data=json.loads(r["payload_json"]),
                created_at=parse_timestamp(r["created_at"]) or utc_now(),
            )
            for r in rows
        ]

    async def delete(self, record_id: str, **params) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM documents WHERE id = ?", (record_id,))
            self._conn.commit()
        return cursor.rowcount > 0
