"""Semantic memory: similarity-searchable knowledge snippets.

store = embed(text) then upsert(id, vector, metadata{text, ...});
query = embed(query_text) then top-K nearest neighbours, optionally
restricted by a metadata equality filter, ranked by descending score.

Two index backends are provided: ``InMemoryVectorIndex`` for tests and
ephemeral use, and ``LanceDBVectorIndex`` for persistence.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from ...interfaces import IEmbeddingService, IMemoryTier, SemanticMatch, SemanticRecord, new_id
from ...utils import cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 3

_SAFE_ID_RE = re.compile(r"^[a-zA-Z0-9_\-:.]+$")


def matches_filter(metadata: dict, filter: Optional[dict]) -> bool:
    """True when every filter key equals the metadata value."""
    if not filter:
        return True
    return all(metadata.get(key) == value for key, value in filter.items())


class VectorIndex(ABC):
    """Minimal nearest-neighbour index consumed by the semantic tier."""

    @abstractmethod
    async def upsert(self, record: SemanticRecord) -> None:
        pass

    @abstractmethod
    async def search(
        self, vector: list[float], top_k: int, filter: Optional[dict] = None
    ) -> list[SemanticMatch]:
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class InMemoryVectorIndex(VectorIndex):
    """Brute-force cosine index held in a dict."""

    def __init__(self):
        self._records: dict[str, SemanticRecord] = {}

    async def upsert(self, record: SemanticRecord) -> None:
        self._records[record.id] = record

    async def search(
        self, vector: list[float], top_k: int, filter: Optional[dict] = None
    ) -> list[SemanticMatch]:
        scored = [
            SemanticMatch(
                id=record.id,
                text=record.text,
                score=cosine_similarity(vector, record.embedding),
                metadata=record.metadata,
            )
            for record in self._records.values()
            if record.embedding is not None and matches_filter(record.metadata, filter)
        ]
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def count(self) -> int:
        return len(self._records)


class LanceDBVectorIndex(VectorIndex):
    """LanceDB-backed index (local path or LanceDB Cloud URI).

    The table is opened lazily on first use. Metadata is stored as a JSON
    column and filtered after the vector search.
    """

    TABLE_NAME = "semantic_memory"
    SEARCH_OVERFETCH = 4

    def __init__(
        self,
        dimensions: int,
        db_path: Optional[Union[str, Path]] = None,
        db_uri: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        self.dimensions = dimensions
        self.db_path = Path(db_path).expanduser() if db_path else None
        self.db_uri = db_uri
        self.api_key = api_key or os.environ.get("LANCEDB_API_KEY")
        self._db = None
        self._table = None

    def _ensure_table(self):
        if self._table is not None:
            return self._table

        import lancedb

        if self.db_uri:
            self._db = lancedb.connect(self.db_uri, api_key=self.api_key)
        elif self.db_path:
            self.db_path.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.db_path))
        else:
            raise ValueError("Either db_path or db_uri must be provided")

        if self.TABLE_NAME in self._db.table_names():
            self._table = self._db.open_table(self.TABLE_NAME)
        else:
            self._table = self._db.create_table(self.TABLE_NAME, schema=self._schema())
        return self._table

    def _schema(self):
        import pyarrow as pa

        return pa.schema([
            pa.field("id", pa.string()),
            pa.field("text", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), self.dimensions)),
            pa.field("metadata", pa.string()),
        ])

    @staticmethod
    def _sanitize_id(record_id: str) -> str:
        if not _SAFE_ID_RE.match(record_id):
            raise ValueError(f"Invalid record id format: {record_id[:20]}...")
        return record_id

    async def upsert(self, record: SemanticRecord) -> None:
        if record.embedding is None or len(record.embedding) != self.dimensions:
            raise ValueError(
                f"Invalid embedding dimension for {record.id}: expected {self.dimensions}"
            )
        table = self._ensure_table()
        table.delete(f"id = '{self._sanitize_id(record.id)}'")
        table.add([{
            "id": record.id,
            "text": record.text,
            "vector": record.embedding,
            "metadata": json.dumps(record.metadata),
        }])

    async def search(
        self, vector: list[float], top_k: int, filter: Optional[dict] = None
    ) -> list[SemanticMatch]:
        table = self._ensure_table()
        limit = top_k * self.SEARCH_OVERFETCH if filter else top_k
        rows = table.search(vector).metric("cosine").limit(limit).to_list()

        matches = []
        for row in rows:
            metadata = json.loads(row.get("metadata") or "{}")
            if not matches_filter(metadata, filter):
                continue
            # Cosine distance → similarity.
            score = 1.0 - float(row.get("_distance", 1.0))
            matches.append(SemanticMatch(id=row["id"], text=row["text"], score=score, metadata=metadata))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def delete(self, record_id: str) -> bool:
        table = self._ensure_table()
        safe_id = self._sanitize_id(record_id)
        before = table.count_rows(f"id = '{safe_id}'")
        table.delete(f"id = '{safe_id}'")
        return before > 0

    async def count(self) -> int:
        return self._ensure_table().count_rows()


class SemanticMemoryTier(IMemoryTier):
    """Embeds text and delegates storage/search to a ``VectorIndex``."""

    name = "semantic"

    def __init__(self, embedding_service: IEmbeddingService, index: Optional[VectorIndex] = None):
        self.embedding_service = embedding_service
        self.index = index or InMemoryVectorIndex()

    async def store(
        self,
        text: str,
        id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> SemanticRecord:
        record_id = id or new_id()
        vector = await self.embedding_service.embed(text)
        record = SemanticRecord(
            id=record_id,
            text=text,
            metadata={**(metadata or {}), "text": text},
            embedding=vector,
        )
        await self.index.upsert(record)
        return record

    async def query(
        self,
        query_text: str,
        top_k: int = DEFAULT_TOP_K,
        filter: Optional[dict] = None,
    ) -> list[SemanticMatch]:
        if top_k < 1:
            return []
        vector = await self.embedding_service.embed(query_text)
        return await self.index.search(vector, top_k, filter)

    async def delete(self, record_id: str, **params) -> bool:
        return await self.index.delete(record_id)

    async def count(self) -> int:
        return await self.index.count()
