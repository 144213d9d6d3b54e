"""Working memory: short-lived per-session scratch values."""

import time
from typing import Any, Callable, Optional

from ...interfaces import IMemoryTier, WorkingRecord

DEFAULT_TTL_SECONDS = 300


class WorkingMemoryTier(IMemoryTier):
    """In-process map of ``session:{id}`` keys with expiry.

    Expired entries are evicted on read, swept on every store, and can be
    cleared explicitly with ``clear_expired``.
    """

    name = "working"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, WorkingRecord] = {}

    @staticmethod
    def key_for(session_id: str) -> str:
        return f"session:{session_id}"

    async def store(self, session_id: str, data: Any, ttl: float = DEFAULT_TTL_SECONDS) -> WorkingRecord:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._evict_expired()
        key = self.key_for(session_id)
        record = WorkingRecord(key=key, data=data, expires_at=self._clock() + ttl)
        self._entries[key] = record
        return record

    async def query(self, session_id: str) -> Optional[Any]:
        key = self.key_for(session_id)
        record = self._entries.get(key)
        if record is None:
            return None
        if record.expires_at <= self._clock():
            del self._entries[key]
            return None
        return record.data

    async def delete(self, record_id: str, **params) -> bool:
        return self._entries.pop(self.key_for(record_id), None) is not None

    async def clear_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        return self._evict_expired()

    def _evict_expired(self) -> int:
        now = self._clock()
        expired = [key for key, record in self._entries.items() if record.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)
