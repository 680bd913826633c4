"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends honour the same consistency contract: writes made inside
``atomic()`` become visible to other threads all at once on commit or not at
all, lookups by an indexed field set cost O(matching rows), and every wait
for the backend is bounded by a timeout that surfaces as StorageTimeout.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple, Sequence
from decimal import Decimal
from datetime import datetime
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import Conflict, StorageTimeout


_DELETED = object()


def _copy(data: Any) -> Any:
    """Deep copy through JSON so stored records never share state with callers"""
    return json.loads(json.dumps(data, default=str))


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def ensure_index(self, table: str, fields: Sequence[str]) -> None:
        """Declare an equality index over ``fields`` (default no-op)"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation.

    Writes inside a transaction are staged per thread and applied under the
    storage lock in a single step at commit, so concurrent readers observe
    either none or all of them.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._indexes: Dict[str, Dict[Tuple[str, ...], Dict[tuple, set]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self.timeout):
            raise StorageTimeout(f"Storage lock not acquired within {self.timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def _tx(self) -> Optional[Dict[str, Dict[str, Any]]]:
        """Staged writes of the calling thread's open transaction, if any"""
        if getattr(self._local, 'depth', 0) > 0:
            return self._local.staged
        return None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}
            self._indexes[table] = {}

    def _index_remove(self, table: str, record_id: str, record: Dict[str, Any]) -> None:
        for fields, buckets in self._indexes[table].items():
            key = tuple(record.get(f) for f in fields)
            bucket = buckets.get(key)
            if bucket:
                bucket.discard(record_id)
                if not bucket:
                    del buckets[key]

    def _index_add(self, table: str, record_id: str, record: Dict[str, Any]) -> None:
        for fields, buckets in self._indexes[table].items():
            key = tuple(record.get(f) for f in fields)
            buckets.setdefault(key, set()).add(record_id)

    def _write(self, table: str, record_id: str, data: Any) -> None:
        """Apply one write to committed state (caller holds the lock)"""
        self._ensure_table(table)
        old = self._data[table].get(record_id)
        if old is not None:
            self._index_remove(table, record_id, old)
        if data is _DELETED:
            self._data[table].pop(record_id, None)
        else:
            self._data[table][record_id] = data
            self._index_add(table, record_id, data)

    def ensure_index(self, table: str, fields: Sequence[str]) -> None:
        """Build (or keep) an equality index over ``fields``"""
        fields = tuple(fields)
        with self._locked():
            self._ensure_table(table)
            if fields in self._indexes[table]:
                return
            buckets: Dict[tuple, set] = {}
            for record_id, record in self._data[table].items():
                key = tuple(record.get(f) for f in fields)
                buckets.setdefault(key, set()).add(record_id)
            self._indexes[table][fields] = buckets

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        staged = self._tx()
        if staged is not None:
            staged.setdefault(table, {})[record_id] = _copy(data)
            return
        with self._locked():
            self._write(table, record_id, _copy(data))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        staged = self._tx()
        if staged is not None and record_id in staged.get(table, {}):
            record = staged[table][record_id]
            return None if record is _DELETED else _copy(record)
        with self._locked():
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        existed = self.exists(table, record_id)
        staged = self._tx()
        if staged is not None:
            staged.setdefault(table, {})[record_id] = _DELETED
            return existed
        with self._locked():
            self._write(table, record_id, _DELETED)
        return existed

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def _candidates(self, table: str, filters: Dict[str, Any]) -> List[str]:
        """Record ids worth scanning, narrowed by the widest usable index"""
        best: Optional[Tuple[str, ...]] = None
        for fields in self._indexes[table]:
            if all(f in filters for f in fields) and (best is None or len(fields) > len(best)):
                best = fields
        if best is None:
            return list(self._data[table].keys())
        key = tuple(filters[f] for f in best)
        return list(self._indexes[table][best].get(key, ()))

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for key, value in filters.items():
            if record.get(key) != value:
                return False
        return True

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._locked():
            self._ensure_table(table)
            found = {}
            for record_id in self._candidates(table, filters):
                record = self._data[table][record_id]
                if self._matches(record, filters):
                    found[record_id] = _copy(record)

        staged = self._tx()
        if staged is not None:
            for record_id, record in staged.get(table, {}).items():
                found.pop(record_id, None)
                if record is not _DELETED and self._matches(record, filters):
                    found[record_id] = _copy(record)
        return list(found.values())

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self.find(table, {}))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._locked():
            self._data[table] = {}
            fields_list = list(self._indexes.get(table, {}).keys())
            self._indexes[table] = {fields: {} for fields in fields_list}

    def begin_transaction(self) -> None:
        """Open (or nest into) the calling thread's transaction"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            self._local.staged = {}
            self._local.rollback_only = False
        self._local.depth = depth + 1

    def commit(self) -> None:
        """Apply staged writes atomically when the outermost transaction ends"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            return
        self._local.depth = depth - 1
        if depth > 1:
            return
        staged, self._local.staged = self._local.staged, {}
        if self._local.rollback_only:
            raise Conflict("Transaction was rolled back by a nested operation")
        with self._locked():
            for table, records in staged.items():
                for record_id, record in records.items():
                    self._write(table, record_id, record)

    def rollback(self) -> None:
        """Discard staged writes"""
        depth = getattr(self._local, 'depth', 0)
        if depth == 0:
            return
        self._local.depth = depth - 1
        if depth > 1:
            self._local.rollback_only = True
            return
        self._local.staged = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    Records are JSON documents; declared indexes become ``json_extract``
    expression indexes. A transaction holds the storage lock from begin to
    commit/rollback, so other threads never read half-applied state.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level='DEFERRED', timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._locked():
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self.timeout):
            raise StorageTimeout(f"Storage lock not acquired within {self.timeout}s")
        try:
            yield
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise StorageTimeout(f"SQLite busy: {e}") from e
            raise
        finally:
            self._lock.release()

    def _maybe_commit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._maybe_commit()
        self._tables.add(table)

    def ensure_index(self, table: str, fields: Sequence[str]) -> None:
        """Create a json_extract expression index over ``fields``"""
        with self._locked():
            self._ensure_table(table)
            name = f"idx_{table}_" + "_".join(fields)
            columns = ", ".join(f"json_extract(data, '$.{f}')" for f in fields)
            self._connection.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {table}({columns})")
            self._maybe_commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._locked():
            self._ensure_table(table)

            created_at = data.get('created_at')
            data_json = json.dumps(data, default=str)
            stamp = data.get('updated_at') or created_at or ""

            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, created_at or stamp, stamp))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._locked():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._locked():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._locked():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if value is None:
                conditions.append(f"json_extract(data, '$.{key}') IS NULL")
            else:
                conditions.append(f"json_extract(data, '$.{key}') = ?")
                params.append(value)
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self._locked():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._locked():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._locked():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        """Start a transaction; the storage lock stays held until it ends"""
        if not self._lock.acquire(timeout=self.timeout):
            raise StorageTimeout(f"Storage lock not acquired within {self.timeout}s")
        if self._depth == 0:
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                if self._rollback_only:
                    self._connection.rollback()
                    raise Conflict("Transaction was rolled back by a nested operation")
                try:
                    self._connection.commit()
                except Exception:
                    # Leave no half-open transaction behind for the next committer
                    self._connection.rollback()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.rollback()
            else:
                self._rollback_only = True
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL

    Args:
        database_url: ``memory://`` or ``sqlite:///path/to.db``
        timeout: Seconds any storage wait may block

    Returns:
        Storage backend instance
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(timeout=timeout)
    if database_url.startswith("sqlite:///"):
        path = database_url[len("sqlite:///"):] or ":memory:"
        return SQLiteStorage(path, timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
