"""Graph memory: subject-predicate-object facts.

Nodes are unique by name and upserted idempotently; every store inserts a
new directed edge between them. Queries return every edge touching the
given name, rendered as ``"subject predicate object"`` text.
"""

from typing import Optional

from ...interfaces import GraphEdge, IMemoryTier, TierError, new_id
from ..sqlite_base import SQLiteStore


class GraphMemoryTier(SQLiteStore, IMemoryTier):
    """SQLite node/edge tables."""

    name = "graph"

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS nodes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        );

        CREATE TABLE IF NOT EXISTS edges (
            id TEXT PRIMARY KEY,
            subject_id INTEGER NOT NULL,
            predicate TEXT NOT NULL,
            object_id INTEGER NOT NULL,
            brain_id TEXT,
            FOREIGN KEY (subject_id) REFERENCES nodes(id) ON DELETE CASCADE,
            FOREIGN KEY (object_id) REFERENCES nodes(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_edges_subject ON edges(subject_id);
        CREATE INDEX IF NOT EXISTS idx_edges_object ON edges(object_id);
    """

    def _upsert_node(self, name: str) -> int:
        return self._conn.execute(
            """
            INSERT INTO nodes (name) VALUES (?)
            ON CONFLICT(name) DO UPDATE SET name = excluded.name
            RETURNING id
            """,
            (name,),
        ).fetchall()[0][0]

    async def store(
        self,
        subject: str,
        predicate: str,
        object: str,
        brain_id: Optional[str] = None,
        id: Optional[str] = None,
    ) -> GraphEdge:
        subject, predicate, object = subject.strip(), predicate.strip(), object.strip()
        if not subject or not predicate or not object:
            raise TierError("Graph fact requires subject, predicate and object")

        edge = GraphEdge(
            id=id or new_id(), subject=subject, predicate=predicate,
            object=object, brain_id=brain_id,
        )
        with self._lock:
            subject_id = self._upsert_node(subject)
            object_id = self._upsert_node(object)
            self._conn.execute(
                """
                INSERT INTO edges (id, subject_id, predicate, object_id, brain_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    subject_id = excluded.subject_id,
                    predicate = excluded.predicate,
                    object_id = excluded.object_id,
                    brain_id = excluded.brain_id
                """,
                (edge.id, subject_id, predicate, object_id, brain_id),
            )
            self._conn.commit()
        return edge

    async def query(self, entity_name: str) -> list[str]:
        """Rendered triples where ``entity_name`` is either endpoint."""
        return [edge.render() for edge in self.edges_for(entity_name)]

    def edges_for(self, entity_name: str) -> list[GraphEdge]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT e.id, s.name AS subject, e.predicate, o.name AS object, e.brain_id
                FROM edges e
                JOIN nodes s ON e.subject_id = s.id
                JOIN nodes o ON e.object_id = o.id
                WHERE s.name = ? OR o.name = ?
                ORDER BY e.rowid
                """,
                (entity_name, entity_name),
            ).fetchall()
        return [
            GraphEdge(
                id=r["id"], subject=r["subject"], predicate=r["predicate"],
                object=r["object"], brain_id=r["brain_id"],
            )
            for r in rows
        ]

    async def delete(self, record_id: str, **params) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM edges WHERE id = ?", (record_id,))
            self._conn.commit()
        return cursor.rowcount > 0
