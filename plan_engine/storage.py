"""
Storage Backend Module

Document storage for plan records: every row is a JSON object keyed by id in
a named table. Dates are ISO strings and money is integer minor units.
Lifecycle operations run inside atomic() and use update_where() for the
compare-and-set writes that guard against payments landing mid-operation.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime


def _matches(record: Dict[str, Any], conditions: Dict[str, Any]) -> bool:
    """Missing keys compare equal to None"""
    return all(record.get(key) == value for key, value in conditions.items())


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    """JSON round trip: detached copy with dates and enums stringified"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, or None"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record in a table, oldest first"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record; False if it did not exist"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def update_where(
        self,
        table: str,
        record_id: str,
        conditions: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        """
        Compare-and-set: apply changes only if the stored record still
        matches every condition. Returns False when the guard fails or the
        record does not exist.
        """
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def atomic(self):
        """
        Context manager for one unit of work

        The block runs exclusively with respect to other atomic blocks on
        the same backend, commits on normal exit and leaves no trace if it
        raises. Nested blocks join the outer one.
        """
        pass


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    atomic() holds the store lock for the whole block and restores a snapshot
    if the block raises, so concurrent writers never observe a half-applied
    operation.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _normalize(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(record)
                for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def update_where(
        self,
        table: str,
        record_id: str,
        conditions: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is None or not _matches(record, conditions):
                return False
            record.update(_normalize(changes))
            return True

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """No-op for in-memory storage"""
        pass

    @contextmanager
    def atomic(self):
        """Serialize the block and roll back to a snapshot on failure"""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy(self._data)
            self._depth = 1
            try:
                yield
            except Exception:
                self._data = snapshot
                raise
            finally:
                self._depth = 0


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    One table per record type with the JSON document in a `data` column.
    Filters are evaluated in SQL with json_extract.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table}")
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._autocommit()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            # created_at survives replacement
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        clauses = []
        params: List[Any] = []
        for key, value in filters.items():
            if not key.isidentifier():
                raise ValueError(f"Invalid filter field: {key}")
            # IS matches NULL for both explicit nulls and missing keys
            clauses.append(f"json_extract(data, '$.{key}') IS ?")
            params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} {where} ORDER BY created_at, rowid", params
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def update_where(
        self,
        table: str,
        record_id: str,
        conditions: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        """Read-check-write under the connection lock"""
        with self._lock:
            record = self.load(table, record_id)
            if record is None or not _matches(record, conditions):
                return False
            record.update(_normalize(changes))
            self.save(table, record_id, record)
            return True

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()['n']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def rollback(self) -> None:
        self._connection.rollback()
        self._in_transaction = False
        # Tables created inside the rolled-back transaction are gone too
        self._tables.clear()

    @contextmanager
    def atomic(self):
        """Hold the connection lock for the whole transaction; nested blocks join the outer one"""
        with self._lock:
            if self._in_transaction:
                yield
                return

            self._in_transaction = True
            try:
                yield
            except Exception:
                self.rollback()
                raise
            self._connection.commit()
            self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Supported forms: ``memory://``, ``sqlite:///:memory:``,
    ``sqlite:///relative/path.db`` and ``sqlite:////absolute/path.db``.
    """
    if database_url in ("memory://", "memory", ""):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
