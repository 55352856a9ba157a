"""
Storage Backend Module

Provides the keyed record store behind every ledger: an abstract interface,
an in-memory implementation (testing) and SQLite (persistence). Records are
JSON documents keyed by an integer id that the store assigns on insert.
All monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Type, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, fields
from pathlib import Path

from .currency import Money
from .exceptions import NotFoundError


_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def _check_identifier(name: str) -> str:
    """Table and field names are interpolated into SQL, so keep them plain"""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _copy(data: Any) -> Any:
    # Deep copy through JSON so callers never share mutable state with the store
    return json.loads(json.dumps(data, default=str))


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: Optional[int]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for storage

        Money fields are flattened to ``<name>_amount`` / ``<name>_currency``.
        """
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Money):
                result[f'{f.name}_amount'] = str(value.amount)
                result[f'{f.name}_currency'] = value.currency.code
            elif isinstance(value, datetime):
                result[f.name] = value.isoformat()
            elif isinstance(value, Decimal):
                result[f.name] = str(value)
            elif isinstance(value, Enum):
                result[f.name] = value.value
            elif isinstance(value, (set, frozenset)):
                result[f.name] = sorted(value)
            else:
                result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if isinstance(data.get('created_at'), str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def insert(self, table: str, data: Dict[str, Any]) -> int:
        """Insert a new record, assign it the next id and return the id"""
        pass

    @abstractmethod
    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        """Insert or overwrite a record under an explicit id"""
        pass

    @abstractmethod
    def replace(self, table: str, record_id: int, data: Dict[str, Any]) -> bool:
        """Overwrite an existing record; False if the id is unknown"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table, ordered by id"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: int) -> bool:
        """Delete a record; False if the id is unknown"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level fields equal the filter values"""
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

    def create_index(self, table: str, field: str) -> None:
        """Declare a secondary index used by find (default no-op)"""
        pass


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._indexes: Dict[str, Dict[str, Dict[Any, set]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}
            self._sequences[table] = 0
            self._indexes[table] = {}

    def _index_add(self, table: str, record_id: int, record: Dict[str, Any]) -> None:
        for field, index in self._indexes[table].items():
            if field in record:
                index.setdefault(record[field], set()).add(record_id)

    def _index_remove(self, table: str, record_id: int) -> None:
        record = self._data[table].get(record_id)
        if record is None:
            return
        for field, index in self._indexes[table].items():
            bucket = index.get(record.get(field))
            if bucket is not None:
                bucket.discard(record_id)
                if not bucket:
                    del index[record.get(field)]

    def _put(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        record = _copy(data)
        record['id'] = record_id
        self._index_remove(table, record_id)
        self._data[table][record_id] = record
        self._index_add(table, record_id, record)

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)
            self._sequences[table] += 1
            record_id = self._sequences[table]
            self._put(table, record_id, data)
            return record_id

    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._put(table, record_id, data)
            # Ids are never reused, even after an explicit-id save
            self._sequences[table] = max(self._sequences[table], record_id)

    def replace(self, table: str, record_id: int, data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id not in self._data[table]:
                return False
            self._put(table, record_id, data)
            return True

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [_copy(self._data[table][key]) for key in sorted(self._data[table])]

    def delete(self, table: str, record_id: int) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._index_remove(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: int) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            candidates = None
            for key, value in filters.items():
                index = self._indexes[table].get(key)
                if index is not None:
                    candidates = set(index.get(value, ()))
                    break
            if candidates is None:
                candidates = set(self._data[table])

            results = []
            for record_id in sorted(candidates):
                record = self._data[table][record_id]
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table] = {}
            for field in self._indexes[table]:
                self._indexes[table][field] = {}

    def create_index(self, table: str, field: str) -> None:
        with self._lock:
            self._ensure_table(table)
            if field in self._indexes[table]:
                return
            self._indexes[table][field] = {}
            for record_id, record in self._data[table].items():
                if field in record:
                    self._indexes[table][field].setdefault(record[field], set()).add(record_id)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._tables:
                return
            _check_identifier(table)
            # AUTOINCREMENT keeps deleted ids from being handed out again
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.commit()
            self._tables.add(table)

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                INSERT INTO {table} (data, created_at, updated_at) VALUES ('{{}}', ?, ?)
            """, (now, now))
            record_id = cursor.lastrowid
            record = dict(data)
            record['id'] = record_id
            self._connection.execute(f"""
                UPDATE {table} SET data = ? WHERE id = ?
            """, (json.dumps(record, default=str), record_id))
            self._connection.commit()
            return record_id

    def save(self, table: str, record_id: int, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            record = dict(data)
            record['id'] = record_id
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(record, default=str), record_id, now, now))
            self._connection.commit()

    def replace(self, table: str, record_id: int, data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            record = dict(data)
            record['id'] = record_id
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?
            """, (json.dumps(record, default=str), datetime.now(timezone.utc).isoformat(), record_id))
            self._connection.commit()
            return cursor.rowcount > 0

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY id")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: int) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._connection.commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: int) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract on each field"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params = []
            for key, value in filters.items():
                conditions.append(f"json_extract(data, '$.{_check_identifier(key)}') = ?")
                params.append(value)
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY id
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._connection.commit()

    def create_index(self, table: str, field: str) -> None:
        """Expression index matching the json_extract used by find"""
        with self._lock:
            self._ensure_table(table)
            _check_identifier(field)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_{field}
                ON {table}(json_extract(data, '$.{field}'))
            """)
            self._connection.commit()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class Repository:
    """
    Typed repository for one record type on top of a storage backend

    create assigns the id; update and delete raise NotFoundError for unknown ids.
    """

    def __init__(self, storage: StorageInterface, table: str,
                 record_type: Type[StorageRecord], indexes: Iterable[str] = ()):
        self.storage = storage
        self.table = table
        self.record_type = record_type
        for field in indexes:
            storage.create_index(table, field)

    def create(self, record: StorageRecord) -> int:
        data = record.to_dict()
        data.pop('id', None)
        record.id = self.storage.insert(self.table, data)
        return record.id

    def update(self, record: StorageRecord) -> None:
        if record.id is None or not self.storage.replace(self.table, record.id, record.to_dict()):
            raise NotFoundError(f"{self.table} record {record.id} not found")

    def delete(self, record_id: int) -> None:
        if not self.storage.delete(self.table, record_id):
            raise NotFoundError(f"{self.table} record {record_id} not found")

    def restore(self, record: StorageRecord) -> None:
        """Write a record back under its existing id, whether or not it still exists"""
        self.storage.save(self.table, record.id, record.to_dict())

    def get(self, record_id: int) -> Optional[StorageRecord]:
        data = self.storage.load(self.table, record_id)
        if data:
            return self.record_type.from_dict(data)
        return None

    def exists(self, record_id: int) -> bool:
        return self.storage.exists(self.table, record_id)

    def find_all(self) -> List[StorageRecord]:
        return [self.record_type.from_dict(data) for data in self.storage.load_all(self.table)]

    def find_by(self, **filters: Any) -> List[StorageRecord]:
        return [self.record_type.from_dict(data) for data in self.storage.find(self.table, filters)]


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supports ``memory://`` and ``sqlite:///path`` (``sqlite://`` alone is an
    in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
