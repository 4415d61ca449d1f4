"""Durable key-value storage for the vaultix escrow host.

Two backends behind one interface:
- MemoryStore: dict-backed, for tests and embedding
- SQLiteStore: single `kv` table, values stored as canonical JSON

Both buffer writes made inside begin() until commit(); rollback() discards
them. The Host drives these calls so each public operation is atomic.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod

from crypto import canonical_json


class Store(ABC):
    """Abstract key-value store. Keys are strings, values are JSON-compatible."""

    @abstractmethod
    def get(self, key: str, default=None):
        ...

    @abstractmethod
    def set(self, key: str, value) -> None:
        ...

    @abstractmethod
    def has(self, key: str) -> bool:
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Sorted keys starting with `prefix`, including writes of the open unit."""
        ...

    @abstractmethod
    def begin(self) -> None:
        """Start buffering writes for one unit of work."""
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


class MemoryStore(Store):
    """In-memory store with a pending-write overlay."""

    def __init__(self):
        self._data: dict[str, bytes] = {}
        self._pending: dict[str, bytes] | None = None

    def get(self, key: str, default=None):
        if self._pending is not None and key in self._pending:
            return json.loads(self._pending[key])
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value) -> None:
        encoded = canonical_json(value)
        if self._pending is not None:
            self._pending[key] = encoded
        else:
            self._data[key] = encoded

    def has(self, key: str) -> bool:
        if self._pending is not None and key in self._pending:
            return True
        return key in self._data

    def begin(self) -> None:
        if self._pending is not None:
            raise RuntimeError("MemoryStore: unit of work already open")
        self._pending = {}

    def commit(self) -> None:
        if self._pending:
            self._data.update(self._pending)
        self._pending = None

    def rollback(self) -> None:
        self._pending = None

    def keys(self, prefix: str = "") -> list[str]:
        found = set(self._data)
        if self._pending is not None:
            found.update(self._pending)
        return sorted(k for k in found if k.startswith(prefix))


class SQLiteStore(Store):
    """SQLite-backed store. One row per key."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._lock = threading.Lock()
        self._in_tx = False
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

    def get(self, key: str, default=None):
        row = self.db.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if not row:
            return default
        return json.loads(row[0])

    def set(self, key: str, value) -> None:
        encoded = canonical_json(value).decode("utf-8")
        with self._lock:
            self.db.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, encoded),
            )

    def has(self, key: str) -> bool:
        row = self.db.execute("SELECT 1 FROM kv WHERE key = ?", (key,)).fetchone()
        return row is not None

    def begin(self) -> None:
        if self._in_tx:
            raise RuntimeError("SQLiteStore: unit of work already open")
        self.db.execute("BEGIN IMMEDIATE")
        self._in_tx = True

    def commit(self) -> None:
        if self._in_tx:
            self.db.execute("COMMIT")
            self._in_tx = False

    def rollback(self) -> None:
        if self._in_tx:
            self.db.execute("ROLLBACK")
            self._in_tx = False

    def keys(self, prefix: str = "") -> list[str]:
        rows = self.db.execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ).fetchall()
        return [r[0] for r in rows]

    def close(self):
        self.db.close()
