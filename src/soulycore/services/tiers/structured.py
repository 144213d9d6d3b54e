"""Structured memory: entities, contacts and entity relationships.

Entities upsert on (name, entity_type) and contacts on (name, email); a
conflicting store updates the mutable columns in place and keeps the
original id. A store that carries the id of an existing record updates
that record instead, renames included. Name lookups are case-insensitive
substring matches.
"""

import json
import sqlite3
from typing import Any, Optional, Union

from ...interfaces import (
    Contact,
    Entity,
    EntityMention,
    EntityRelationship,
    IMemoryTier,
    TierError,
    new_id,
)
from ...utils import parse_timestamp, utc_now
from ..sqlite_base import SQLiteStore

RecordType = str  # "entity" | "contact" | "relationship" | "mention"
StructuredRecord = Union[Entity, Contact, EntityRelationship, EntityMention]

_RECORD_TYPES = ("entity", "contact", "relationship")


class StructuredMemoryTier(SQLiteStore, IMemoryTier):
    """SQLite tables with natural-key upserts."""

    name = "structured"

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS entities (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            aliases_json TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(name, entity_type)
        );

        CREATE TABLE IF NOT EXISTS contacts (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT NOT NULL DEFAULT '',
            company TEXT,
            phone TEXT,
            notes TEXT,
            tags_json TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL,
            UNIQUE(name, email)
        );

        CREATE TABLE IF NOT EXISTS entity_relationships (
            id TEXT PRIMARY KEY,
            source_id TEXT NOT NULL,
            predicate TEXT NOT NULL,
            target_id TEXT NOT NULL,
            FOREIGN KEY (source_id) REFERENCES entities(id) ON DELETE CASCADE,
            FOREIGN KEY (target_id) REFERENCES entities(id) ON DELETE CASCADE,
            UNIQUE(source_id, predicate, target_id)
        );

        CREATE TABLE IF NOT EXISTS entity_mentions (
            message_id TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            conversation_id TEXT,
            PRIMARY KEY (message_id, entity_id),
            FOREIGN KEY (entity_id) REFERENCES entities(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);
        CREATE INDEX IF NOT EXISTS idx_mentions_entity ON entity_mentions(entity_id);
        CREATE INDEX IF NOT EXISTS idx_contacts_name ON contacts(name);
    """

    async def store(self, type: RecordType, data: dict[str, Any]) -> StructuredRecord:
        """Upsert an entity, contact, relationship or mention.

        Args:
            type: "entity", "contact", "relationship" or "mention".
            data: Column values. Entities need ``name`` and ``type`` (or
                ``entity_type``); contacts need ``name``; relationships need
                ``source_id``, ``predicate`` and ``target_id``; mentions need
                ``message_id`` and ``entity_id``.

        Raises:
            TierError: Unknown type or missing required fields.
        """
        if type == "entity":
            return self._upsert_entity(data)
        if type == "contact":
            return self._upsert_contact(data)
        if type == "relationship":
            return self._upsert_relationship(data)
        if type == "mention":
            return self._record_mention(data)
        raise TierError(f"Unknown structured record type: {type!r}")

    async def query(
        self,
        type: RecordType,
        id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> list[StructuredRecord]:
        """Lookup by id, by fuzzy name, or everything of ``type``."""
        self._check_type(type)
        if type == "relationship":
            return self._query_relationships(entity_id=id)

        table = "entities" if type == "entity" else "contacts"
        order = "created_at DESC" if type == "entity" else "name ASC"
        with self._lock:
            if id is not None:
                rows = self._conn.execute(f"SELECT * FROM {table} WHERE id = ?", (id,)).fetchall()
            elif name:
                rows = self._conn.execute(
                    f"SELECT * FROM {table} WHERE name LIKE ? ORDER BY {order}",
                    (f"%{name}%",),
                ).fetchall()
            else:
                rows = self._conn.execute(f"SELECT * FROM {table} ORDER BY {order}").fetchall()

        if type == "entity":
            return [self._row_to_entity(r) for r in rows]
        return [self._row_to_contact(r) for r in rows]

    async def delete(self, record_id: str, type: RecordType = "entity", **params) -> bool:
        self._check_type(type)
        table = {
            "entity": "entities",
            "contact": "contacts",
            "relationship": "entity_relationships",
        }[type]
        with self._lock:
            cursor = self._conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    def unlinked_co_mentions(
        self,
        message_ids: list[str],
        min_mentions: int = 2,
        limit: int = 1,
    ) -> list[tuple[Entity, Entity, int]]:
        """Entity pairs named together in ``message_ids`` with no relationship yet.

        Pairs are ordered by entity id, need at least ``min_mentions`` shared
        messages, and come back most co-mentioned first.
        """
        if not message_ids:
            return []
        placeholders = ", ".join("?" for _ in message_ids)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT m1.entity_id AS first_id, m2.entity_id AS second_id,
                       COUNT(*) AS mention_count
                FROM entity_mentions m1
                JOIN entity_mentions m2
                    ON m1.message_id = m2.message_id AND m1.entity_id < m2.entity_id
                WHERE m1.message_id IN ({placeholders})
                  AND NOT EXISTS (
                      SELECT 1 FROM entity_relationships r
                      WHERE (r.source_id = m1.entity_id AND r.target_id = m2.entity_id)
                         OR (r.source_id = m2.entity_id AND r.target_id = m1.entity_id)
                  )
                GROUP BY m1.entity_id, m2.entity_id
                HAVING COUNT(*) >= ?
                ORDER BY mention_count DESC, first_id ASC, second_id ASC
                LIMIT ?
                """,
                (*message_ids, min_mentions, limit),
            ).fetchall()
            pairs = []
            for row in rows:
                first = self._conn.execute(
                    "SELECT * FROM entities WHERE id = ?", (row["first_id"],)
                ).fetchone()
                second = self._conn.execute(
                    "SELECT * FROM entities WHERE id = ?", (row["second_id"],)
                ).fetchone()
                if first is not None and second is not None:
                    pairs.append((
                        self._row_to_entity(first),
                        self._row_to_entity(second),
                        row["mention_count"],
                    ))
        return pairs

    # ------------------------------------------------------------------

    @staticmethod
    def _check_type(type: str) -> None:
        if type not in _RECORD_TYPES:
            raise TierError(f"Unknown structured record type: {type!r}")

    def _upsert_entity(self, data: dict) -> Entity:
        name = (data.get("name") or "").strip()
        entity_type = (data.get("entity_type") or data.get("type") or "").strip()
        if not name or not entity_type:
            raise TierError("Entity requires name and type")
        description = data.get("description") or data.get("details") or ""
        aliases = json.dumps(list(data.get("aliases") or []))
        now = utc_now().isoformat()

        with self._lock:
            if self._exists("entities", data.get("id")):
                row = self._execute_one(
                    """
                    UPDATE entities SET
                        name = ?, entity_type = ?, description = ?,
                        aliases_json = ?, updated_at = ?
                    WHERE id = ?
                    RETURNING *
                    """,
                    (name, entity_type, description, aliases, now, data["id"]),
                )
            else:
                row = self._execute_one(
                    """
                    INSERT INTO entities (id, name, entity_type, description, aliases_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(name, entity_type) DO UPDATE SET
                        description = excluded.description,
                        aliases_json = excluded.aliases_json,
                        updated_at = excluded.updated_at
                    RETURNING *
                    """,
                    (data.get("id") or new_id(), name, entity_type, description,
                     aliases, now, now),
                )
        return self._row_to_entity(row)

    def _upsert_contact(self, data: dict) -> Contact:
        name = (data.get("name") or "").strip()
        if not name:
            raise TierError("Contact requires a name")
        email = data.get("email") or ""
        tags = json.dumps(list(data.get("tags") or []))
        now = utc_now().isoformat()

        with self._lock:
            if self._exists("contacts", data.get("id")):
                row = self._execute_one(
                    """
                    UPDATE contacts SET
                        name = ?, email = ?, company = ?, phone = ?, notes = ?, tags_json = ?
                    WHERE id = ?
                    RETURNING *
                    """,
                    (name, email, data.get("company"), data.get("phone"),
                     data.get("notes"), tags, data["id"]),
                )
            else:
                row = self._execute_one(
                    """
                    INSERT INTO contacts (id, name, email, company, phone, notes, tags_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(name, email) DO UPDATE SET
                        company = excluded.company,
                        phone = excluded.phone,
                        notes = excluded.notes,
                        tags_json = excluded.tags_json
                    RETURNING *
                    """,
                    (
                        data.get("id") or new_id(), name, email,
                        data.get("company"), data.get("phone"), data.get("notes"),
                        tags, now,
                    ),
                )
        return self._row_to_contact(row)

    def _exists(self, table: str, record_id: Optional[str]) -> bool:
        if not record_id:
            return False
        row = self._conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return row is not None

    def _execute_one(self, sql: str, params: tuple) -> sqlite3.Row:
        """Run a single-row write and commit it.

        A write that collides with another record's natural key raises
        ``TierError`` instead of leaking ``sqlite3.IntegrityError``.
        """
        try:
            row = self._conn.execute(sql, params).fetchall()[0]
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise TierError(f"Conflicting structured record: {e}") from e
        self._conn.commit()
        return row

    def _upsert_relationship(self, data: dict) -> EntityRelationship:
        try:
            source_id, predicate, target_id = data["source_id"], data["predicate"], data["target_id"]
        except KeyError as e:
            raise TierError(f"Relationship missing field: {e}") from e

        with self._lock:
            if self._exists("entity_relationships", data.get("id")):
                row = self._execute_one(
                    """
                    UPDATE entity_relationships SET source_id = ?, predicate = ?, target_id = ?
                    WHERE id = ?
                    RETURNING *
                    """,
                    (source_id, predicate, target_id, data["id"]),
                )
            else:
                row = self._execute_one(
                    """
                    INSERT INTO entity_relationships (id, source_id, predicate, target_id)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(source_id, predicate, target_id) DO UPDATE SET predicate = excluded.predicate
                    RETURNING *
                    """,
                    (data.get("id") or new_id(), source_id, predicate, target_id),
                )
        return EntityRelationship(
            id=row["id"], source_id=row["source_id"],
            predicate=row["predicate"], target_id=row["target_id"],
        )

    def _record_mention(self, data: dict) -> EntityMention:
        try:
            message_id, entity_id = data["message_id"], data["entity_id"]
        except KeyError as e:
            raise TierError(f"Mention missing field: {e}") from e

        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO entity_mentions (message_id, entity_id, conversation_id)
                    VALUES (?, ?, ?)
                    ON CONFLICT(message_id, entity_id) DO NOTHING
                    """,
                    (message_id, entity_id, data.get("conversation_id")),
                )
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise TierError(f"Mention of unknown entity {entity_id}: {e}") from e
            self._conn.commit()
        return EntityMention(
            message_id=message_id, entity_id=entity_id, conversation_id=data.get("conversation_id")
        )

    def _query_relationships(self, entity_id: Optional[str]) -> list[EntityRelationship]:
        with self._lock:
            if entity_id:
                rows = self._conn.execute(
                    "SELECT * FROM entity_relationships WHERE source_id = ? OR target_id = ?",
                    (entity_id, entity_id),
                ).fetchall()
            else:
                rows = self._conn.execute("SELECT * FROM entity_relationships").fetchall()
        return [
            EntityRelationship(
                id=r["id"], source_id=r["source_id"],
                predicate=r["predicate"], target_id=r["target_id"],
            )
            for r in rows
        ]

    @staticmethod
    def _row_to_entity(row) -> Entity:
        return Entity(
            id=row["id"],
            name=row["name"],
            entity_type=row["entity_type"],
            description=row["description"],
            aliases=json.loads(row["aliases_json"] or "[]"),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_contact(row) -> Contact:
        return Contact(
            id=row["id"],
            name=row["name"],
            email=row["email"] or None,
            company=row["company"],
            phone=row["phone"],
            notes=row["notes"],
            tags=json.loads(row["tags_json"] or "[]"),
            created_at=parse_timestamp(row["created_at"]),
        )
