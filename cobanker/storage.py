"""
Storage Backend Module

Provides the abstract datastore interface and implementations for in-memory
(testing), SQLite (single node) and PostgreSQL (managed relational service).
Records are JSON documents keyed by id; all monetary values are stored as
Decimal strings.

Beyond plain CRUD every backend offers the three primitives the ledger relies
on: an atomic unit of work, a compare-and-swap update and unique indexes on
document fields.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import DuplicateRecordError, StorageFailure


def _to_storable(value: Any) -> Any:
    """Convert a Python value into its JSON document form"""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_storable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: _to_storable(value) for key, value in asdict(self).items()}


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateRecordError if the id or a unique field exists"""
        pass

    @abstractmethod
    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """
        Replace a record only if its stored fields still equal `expected`.

        Returns:
            True if the record was written, False if it changed (or vanished)
        """
        pass

    @abstractmethod
    def ensure_unique_index(self, table: str, field: str) -> None:
        """Declare that non-null values of `field` are unique within `table`"""
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

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) a unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the current unit of work"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard the current unit of work"""
        pass

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Every write inside the block commits together or not at all. Nested
        blocks join the outermost unit.
        """
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    A unit of work holds the store lock from begin to commit, so other threads
    observe either none or all of its writes. Rollback replays an undo log.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: List[Tuple[str, Optional[str], Any]] = []

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _remember(self, table: str, record_id: Optional[str]) -> None:
        """Record the pre-image of a row (or whole table) for rollback"""
        if self._depth == 0:
            return
        if record_id is None:
            self._undo.append((table, None, dict(self._data[table])))
        else:
            self._undo.append((table, record_id, self._data[table].get(record_id)))

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        for field in self._unique.get(table, ()):
            value = data.get(field)
            if value is None:
                continue
            for other_id, other in self._data[table].items():
                if other_id != record_id and other.get(field) == value:
                    raise DuplicateRecordError(table, field, str(value))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            stored = self._copy(data)
            self._check_unique(table, record_id, stored)
            self._remember(table, record_id)
            self._data[table][record_id] = stored

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateRecordError(table, "id", record_id)
            self.save(table, record_id, data)

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """Check-and-write under the store lock"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None:
                return False
            for key, value in expected.items():
                if current.get(key) != value:
                    return False
            self.save(table, record_id, data)
            return True

    def ensure_unique_index(self, table: str, field: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._unique.setdefault(table, set()).add(field)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(record.get(key) == value for key, value in filters.items()):
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, None)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._undo = []
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._undo = []
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                for table, record_id, previous in reversed(self._undo):
                    if record_id is None:
                        self._data[table] = previous
                    elif previous is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = previous
                self._undo = []
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Autocommit mode; units of work issue BEGIN IMMEDIATE themselves
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: Set[str] = set()
        self._unique: Dict[str, Set[str]] = {}

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @contextmanager
    def _translate_errors(self, table: str, record_id: Optional[str] = None):
        """Map driver exceptions onto the domain taxonomy"""
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise self._duplicate_error(table, record_id, str(e)) from e
        except (sqlite3.OperationalError, sqlite3.ProgrammingError,
                sqlite3.DatabaseError) as e:
            raise StorageFailure(f"SQLite error on {table}: {e}") from e

    def _duplicate_error(self, table: str, record_id: Optional[str],
                         message: str) -> DuplicateRecordError:
        for field in self._unique.get(table, ()):
            if f"uq_{table}_{field}" in message:
                return DuplicateRecordError(table, field)
        return DuplicateRecordError(table, "id", record_id)

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
        # Create index on timestamps for better query performance
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    @staticmethod
    def _where(filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if value is None:
                conditions.append("json_extract(data, ?) IS NULL")
                params.append(f"$.{key}")
            else:
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])
        return " AND ".join(conditions), params

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._translate_errors(table, record_id):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            # Upsert on the primary key only; unique-index clashes still raise
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into SQLite"""
        with self._lock, self._translate_errors(table, record_id):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """Conditional UPDATE; the row count tells whether the swap won"""
        with self._lock, self._translate_errors(table, record_id):
            self._ensure_table(table)
            where, params = self._where(expected)
            sql = f"UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?"
            if where:
                sql = f"{sql} AND {where}"
            cursor = self._connection.execute(
                sql,
                [json.dumps(data, default=str), datetime.now(timezone.utc).isoformat(),
                 record_id, *params],
            )
            return cursor.rowcount == 1

    def ensure_unique_index(self, table: str, field: str) -> None:
        with self._lock, self._translate_errors(table):
            self._ensure_table(table)
            self._connection.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{field}
                ON {table}(json_extract(data, '$.{field}'))
            """)
            self._unique.setdefault(table, set()).add(field)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._translate_errors(table, record_id):
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
        with self._lock, self._translate_errors(table, record_id):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._translate_errors(table, record_id):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records using json_extract on the document column"""
        with self._lock, self._translate_errors(table):
            self._ensure_table(table)
            where, params = self._where(filters)
            sql = f"SELECT data FROM {table}"
            if where:
                sql = f"{sql} WHERE {where}"
            cursor = self._connection.execute(f"{sql} ORDER BY created_at, rowid", params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, self._translate_errors(table):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._translate_errors(table):
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a write transaction, taking the database write lock up front"""
        self._lock.acquire()
        if self._depth == 0:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                self._lock.release()
                raise StorageFailure(f"Could not begin transaction: {e}") from e
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error as e:
                    self._abort()
                    raise StorageFailure(f"Commit failed: {e}") from e
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._abort()
        finally:
            self._lock.release()

    def _abort(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")
        # Tables created inside the aborted unit are gone again
        self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install cobanker[postgres]")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: Set[str] = set()
        self._unique: Dict[str, Set[str]] = {}
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error:
                    pass
            try:
                self._connection = self.psycopg2.connect(
                    self.connection_string,
                    cursor_factory=self.extras.RealDictCursor
                )
            except self.psycopg2.OperationalError as e:
                raise StorageFailure(f"Cannot connect to PostgreSQL: {e}") from e
            self._connection.autocommit = False  # We handle transactions manually

    @staticmethod
    def _text(value: Any) -> str:
        """Render a value the way ->> renders the JSON field"""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _where(self, filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if value is None:
                conditions.append("data ->> %s IS NULL")
                params.append(key)
            else:
                conditions.append("data ->> %s = %s")
                params.extend([key, self._text(value)])
        return " AND ".join(conditions), params

    @contextmanager
    def _cursor(self, table: str, record_id: Optional[str] = None):
        """Yield a cursor; commit outside units of work and translate errors"""
        with self._lock:
            if self._connection is None or self._connection.closed:
                if self._depth:
                    raise StorageFailure("Connection lost inside a transaction")
                self._connect()
            cursor = self._connection.cursor()
            try:
                yield cursor
                if not self._depth:
                    self._connection.commit()
            except self.psycopg2.IntegrityError as e:
                if not self._depth:
                    self._connection.rollback()
                constraint = getattr(getattr(e, 'diag', None), 'constraint_name', None) or ""
                field = next(
                    (f for f in self._unique.get(table, ()) if constraint == f"uq_{table}_{f}"),
                    "id",
                )
                raise DuplicateRecordError(table, field, record_id if field == "id" else None) from e
            except (self.psycopg2.OperationalError, self.psycopg2.InterfaceError) as e:
                if not self._depth:
                    self._connection = None
                raise StorageFailure(f"PostgreSQL error on {table}: {e}") from e
            except self.psycopg2.Error:
                if not self._depth:
                    self._connection.rollback()
                raise
            finally:
                if not cursor.closed:
                    cursor.close()

    def _ensure_table(self, cursor, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._cursor(table, record_id) as cursor:
            self._ensure_table(cursor, table)
            now = datetime.now(timezone.utc)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Plain INSERT; primary key and unique index violations raise"""
        with self._cursor(table, record_id) as cursor:
            self._ensure_table(cursor, table)
            now = datetime.now(timezone.utc)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
            """, (record_id, json.dumps(data, default=str), now, now))

    def compare_and_swap(self, table: str, record_id: str,
                         expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """Conditional UPDATE; the row lock serializes concurrent writers"""
        with self._cursor(table, record_id) as cursor:
            self._ensure_table(cursor, table)
            where, params = self._where(expected)
            sql = f"UPDATE {table} SET data = %s, updated_at = %s WHERE id = %s"
            if where:
                sql = f"{sql} AND {where}"
            cursor.execute(sql, [json.dumps(data, default=str), datetime.now(timezone.utc),
                                 record_id, *params])
            return cursor.rowcount == 1

    def ensure_unique_index(self, table: str, field: str) -> None:
        with self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{field}
                ON {table} ((data ->> '{field}'))
            """)
            self._unique.setdefault(table, set()).add(field)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._cursor(table, record_id) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._cursor(table, record_id) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._cursor(table, record_id) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            where, params = self._where(filters)
            sql = f"SELECT data FROM {table}"
            if where:
                sql = f"{sql} WHERE {where}"
            cursor.execute(f"{sql} ORDER BY created_at, id", params)
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._cursor(table) as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """PostgreSQL transactions start implicitly; track nesting and hold the connection"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.commit()
                except self.psycopg2.Error as e:
                    self._abort()
                    raise StorageFailure(f"Commit failed: {e}") from e
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._abort()
        finally:
            self._lock.release()

    def _abort(self) -> None:
        self._tables.clear()
        if self._connection is None or self._connection.closed:
            return
        try:
            self._connection.rollback()
        except (self.psycopg2.OperationalError, self.psycopg2.InterfaceError):
            self._connection = None

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error:
                    pass
                self._connection = None


def create_storage(database_url: str, sqlite_timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db`` (or
    ``sqlite:///:memory:``) and ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", timeout=sqlite_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
