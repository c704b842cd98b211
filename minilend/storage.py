"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends support nested atomic() blocks. Writes made inside a
transaction are buffered per thread and applied together when the outermost
block commits, so other threads only ever see committed state.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import LockTimeout


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
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
        """Find records matching filters"""
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

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def in_transaction(self) -> bool:
        """Whether the calling thread has a transaction open"""
        return False

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run callback after the calling thread's transaction commits (now if none is open)"""
        if not self.in_transaction():
            callback()
            return
        self._commit_hooks().append(callback)

    def _commit_hooks(self) -> List[Callable[[], None]]:
        local = self.__dict__.setdefault('_hooks_local', threading.local())
        if not hasattr(local, 'callbacks'):
            local.callbacks = []
        return local.callbacks

    def _run_commit_hooks(self) -> None:
        hooks = self._commit_hooks()
        callbacks = list(hooks)
        hooks.clear()
        for callback in callbacks:
            callback()

    def _discard_commit_hooks(self) -> None:
        self._commit_hooks().clear()

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


def _copy(data: Any) -> Any:
    """Deep copy through JSON so callers never share mutable state"""
    return json.loads(json.dumps(data, default=str))


# Table -> record id -> data, where None marks a deletion
WriteSet = Dict[str, Dict[str, Optional[Dict[str, Any]]]]


class BufferedStorage(StorageInterface):
    """
    Storage whose transactions buffer writes per thread

    Inside atomic() a thread reads its own pending writes on top of committed
    state; everyone else reads committed state only. The outermost commit
    applies the whole write set in one step under the backend lock, which is
    only ever held for that step or a single read, never for the lifetime of
    a transaction.
    """

    lock_timeout_seconds: float = 5.0

    # -- backend primitives --------------------------------------------------

    @abstractmethod
    def _fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Committed record, or None"""
        pass

    @abstractmethod
    def _fetch_all(self, table: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Committed (id, record) pairs in insertion order"""
        pass

    @abstractmethod
    def _apply(self, writes: WriteSet) -> None:
        """Make a write set durable and visible all at once"""
        pass

    def _count(self, table: str) -> int:
        return len(self._fetch_all(table))

    @contextmanager
    def _locked(self):
        """Hold the backend lock, giving up after lock_timeout_seconds"""
        if not self._lock.acquire(timeout=self.lock_timeout_seconds):
            raise LockTimeout(
                f"Storage lock not acquired within {self.lock_timeout_seconds} seconds"
            )
        try:
            yield
        finally:
            self._lock.release()

    # -- per-thread transaction state ----------------------------------------

    def _tx_state(self) -> threading.local:
        local = self.__dict__.setdefault('_tx_local', threading.local())
        if not hasattr(local, 'depth'):
            local.depth = 0
            local.writes = {}
        return local

    def _pending(self, table: str) -> Dict[str, Optional[Dict[str, Any]]]:
        state = self._tx_state()
        if state.depth == 0:
            return {}
        return state.writes.get(table, {})

    def _write(self, table: str, records: Dict[str, Optional[Dict[str, Any]]]) -> None:
        state = self._tx_state()
        if state.depth > 0:
            state.writes.setdefault(table, {}).update(records)
        else:
            self._apply({table: records})

    # -- StorageInterface ----------------------------------------------------

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._write(table, {record_id: _copy(data)})

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pending = self._pending(table)
        record = pending[record_id] if record_id in pending else self._fetch(table, record_id)
        return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        records = dict(self._fetch_all(table))
        for record_id, data in self._pending(table).items():
            if data is None:
                records.pop(record_id, None)
            else:
                records[record_id] = data
        return [_copy(record) for record in records.values()]

    def delete(self, table: str, record_id: str) -> bool:
        if not self.exists(table, record_id):
            return False
        self._write(table, {record_id: None})
        return True

    def exists(self, table: str, record_id: str) -> bool:
        pending = self._pending(table)
        if record_id in pending:
            return pending[record_id] is not None
        return self._fetch(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple key matching)"""
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def count(self, table: str) -> int:
        if self._pending(table):
            return len(self.load_all(table))
        return self._count(table)

    def clear_table(self, table: str) -> None:
        ids = [record_id for record_id, _ in self._fetch_all(table)]
        ids.extend(record_id for record_id, data in self._pending(table).items() if data is not None)
        if ids:
            self._write(table, {record_id: None for record_id in ids})

    def in_transaction(self) -> bool:
        return self._tx_state().depth > 0

    def begin_transaction(self) -> None:
        """Open (or nest into) this thread's transaction"""
        state = self._tx_state()
        if state.depth == 0:
            state.writes = {}
        state.depth += 1

    def commit(self) -> None:
        """Close one nesting level; the outermost level applies the write set"""
        state = self._tx_state()
        if state.depth == 0:
            return
        state.depth -= 1
        if state.depth > 0:
            return

        writes, state.writes = state.writes, {}
        try:
            if writes:
                self._apply(writes)
        except BaseException:
            self._discard_commit_hooks()
            raise
        self._run_commit_hooks()

    def rollback(self) -> None:
        """Drop every write buffered since the outermost begin_transaction"""
        state = self._tx_state()
        state.depth = 0
        state.writes = {}
        self._discard_commit_hooks()


class InMemoryStorage(BufferedStorage):
    """
    In-memory storage implementation for testing.
    """

    def __init__(self, lock_timeout_seconds: float = 5.0):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self.lock_timeout_seconds = lock_timeout_seconds

    def _fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        # Stored dicts are replaced, never mutated, so handing one out is safe
        with self._locked():
            return self._data.get(table, {}).get(record_id)

    def _fetch_all(self, table: str) -> List[Tuple[str, Dict[str, Any]]]:
        with self._locked():
            return list(self._data.get(table, {}).items())

    def _count(self, table: str) -> int:
        with self._locked():
            return len(self._data.get(table, {}))

    def _apply(self, writes: WriteSet) -> None:
        with self._locked():
            for table, records in writes.items():
                stored = self._data.setdefault(table, {})
                for record_id, data in records.items():
                    if data is None:
                        stored.pop(record_id, None)
                    else:
                        stored[record_id] = data

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(BufferedStorage):
    """
    SQLite storage implementation for persistence.

    One shared connection guarded by a lock; each committed write set is a
    single SQLite transaction.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout_seconds: float = 5.0):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.lock_timeout_seconds = lock_timeout_seconds
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
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
        self._connection.commit()
        self._tables.add(table)

    def _fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._locked():
            self._ensure_table(table)
            row = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
        if row:
            return json.loads(row['data'])
        return None

    def _fetch_all(self, table: str) -> List[Tuple[str, Dict[str, Any]]]:
        with self._locked():
            self._ensure_table(table)
            rows = self._connection.execute(f"""
                SELECT id, data FROM {table} ORDER BY created_at, rowid
            """).fetchall()
        return [(row['id'], json.loads(row['data'])) for row in rows]

    def _count(self, table: str) -> int:
        with self._locked():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def _apply(self, writes: WriteSet) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._locked():
            # DDL commits on its own, so create tables before the write set starts
            for table in writes:
                self._ensure_table(table)
            try:
                for table, records in writes.items():
                    for record_id, data in records.items():
                        if data is None:
                            self._connection.execute(f"""
                                DELETE FROM {table} WHERE id = ?
                            """, (record_id,))
                            continue
                        # Use INSERT OR REPLACE to handle updates
                        self._connection.execute(f"""
                            INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                            VALUES (?, ?,
                                COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                                ?)
                        """, (record_id, json.dumps(data, default=str), record_id, now, now))
                self._connection.commit()
            except BaseException:
                self._connection.rollback()
                raise

    def close(self) -> None:
        """Close SQLite connection"""
        with self._locked():
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, lock_timeout_seconds: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL

    Args:
        database_url: ``memory://`` or ``sqlite:///path/to/file.db``
            (``sqlite://`` alone means an in-memory SQLite database)
        lock_timeout_seconds: Longest wait for the backend lock

    Returns:
        Storage backend instance
    """
    if database_url in ("", "memory://"):
        return InMemoryStorage(lock_timeout_seconds)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", lock_timeout_seconds)
    raise ValueError(f"Unsupported database URL: {database_url}")
