"""Shared SQLite connection management.

Every SQLite-backed store holds one persistent connection with WAL mode,
``sqlite3.Row`` rows and an RLock around each statement batch.

    with StructuredMemoryTier(db_path) as tier:
        ...

Pass ``":memory:"`` for a throwaway database.
"""

import sqlite3
import threading
import warnings
from pathlib import Path
from typing import Union

MEMORY_DB = ":memory:"


class SQLiteStore:
    """Base class owning a thread-safe SQLite connection."""

    SCHEMA: str = ""

    def __init__(self, db_path: Union[str, Path] = MEMORY_DB):
        if str(db_path) == MEMORY_DB:
            self.db_path = MEMORY_DB
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)

        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        if self.db_path != MEMORY_DB:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(self.SCHEMA)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __del__(self) -> None:
        self.close()

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        conn = getattr(self, "_conn", None)
        if conn is None:
            return
        try:
            conn.close()
        except sqlite3.ProgrammingError:
            pass
        except Exception as e:
            warnings.warn(
                f"Unexpected error closing {type(self).__name__}: {e}",
                RuntimeWarning,
                stacklevel=2,
            )
        self._conn = None
