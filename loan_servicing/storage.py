"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). Records are JSON documents keyed by id;
all monetary values are stored as Decimal strings.

Writers that must not lose concurrent updates use compare_and_save, which
checks the stored document's version before replacing it.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrentModificationError


@dataclass
class StorageRecord:
    """Fields shared by every persisted record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict; datetimes as ISO strings, Decimals as strings"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Inverse of to_dict"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class StorageInterface(ABC):
    """Document store holding loans, installments and audit events"""

    _lock: threading.RLock

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Record by id, or None"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record in a table, oldest first"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record; False if it was not there"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """True if the id is present"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Number of records in a table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Remove every record from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release connections and file handles"""
        pass

    def query(self, table: str, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        """Find records matching an arbitrary predicate (date ranges, text search)"""
        return [record for record in self.load_all(table) if predicate(record)]

    def compare_and_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int],
        entity_type: str = "record",
        version_field: str = "version"
    ) -> None:
        """
        Save only if the stored version still equals expected_version

        Args:
            expected_version: Version the caller read, or None for a record
                that must not exist yet

        Raises:
            ConcurrentModificationError: If another writer got there first
        """
        with self._lock:
            current = self.load(table, record_id)
            actual = current.get(version_field, 0) if current is not None else None
            if actual != expected_version:
                raise ConcurrentModificationError(entity_type, record_id, expected_version, actual)
            self.save(table, record_id, data)

    def begin_transaction(self) -> None:
        """Open a unit of work"""
        pass

    def commit(self) -> None:
        """Make the unit of work permanent"""
        pass

    def rollback(self) -> None:
        """Discard the unit of work"""
        pass

    @contextmanager
    def atomic(self):
        """Run the enclosed writes as one unit; any exception undoes them all"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    Dict-backed store used by tests and memory:// deployments

    A transaction holds the storage lock for its whole duration and keeps a
    snapshot so that rollback restores every table.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Store a detached copy of the record"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Detached copy of the record, or None"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Detached copies in insertion order"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose fields equal every filter value"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1
        if self._depth == 1:
            self._snapshot = json.loads(json.dumps(self._data))

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._lock.release()

    def close(self) -> None:
        """Nothing to release"""
        pass


class SQLiteStorage(StorageInterface):
    """
    File-backed store

    Each table keeps the JSON document alongside its version in a column of
    its own, so a versioned write is checked and applied in one statement.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED isolation so that writes inside atomic() share one transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def _commit_unless_atomic(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if not self._in_transaction:
                self._connection.commit()
                self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record; created_at survives replacement"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    version = excluded.version,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), data.get('version', 0), now, now))
            self._commit_unless_atomic()

    def compare_and_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int],
        entity_type: str = "record",
        version_field: str = "version"
    ) -> None:
        """Versioned write checked against the version column"""
        with self._lock:
            self._ensure_table(table)
            if expected_version is None:
                if self.exists(table, record_id):
                    raise ConcurrentModificationError(
                        entity_type, record_id, expected_version, self._stored_version(table, record_id)
                    )
                self.save(table, record_id, data)
                return

            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (json.dumps(data, default=str), data.get(version_field, 0),
                  datetime.now(timezone.utc).isoformat(), record_id, expected_version))
            if cursor.rowcount == 0:
                raise ConcurrentModificationError(
                    entity_type, record_id, expected_version, self._stored_version(table, record_id)
                )
            self._commit_unless_atomic()

    def _stored_version(self, table: str, record_id: str) -> Optional[int]:
        row = self._connection.execute(
            f"SELECT version FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return row['version'] if row else None

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record, ordered by first insertion"""
        with self._lock:
            self._ensure_table(table)
            rows = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, rowid"
            ).fetchall()
            return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._commit_unless_atomic()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Equality match on top-level document keys"""
        return self.query(
            table,
            lambda record: all(key in record and record[key] == value for key, value in filters.items())
        )

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) AS total FROM {table}").fetchone()['total']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._commit_unless_atomic()

    def begin_transaction(self) -> None:
        """Hold the connection lock until the matching commit or rollback"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._connection.commit()
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._connection.rollback()
        self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported: "memory://", "sqlite:///:memory:", "sqlite:///path/to/file.db"
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
