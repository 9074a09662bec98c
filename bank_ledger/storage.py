"""
Storage Backend Module

Keyed JSON records grouped in tables, with an in-memory backend for tests and
a SQLite backend for persistence. Monetary values travel as Decimal strings.

Every backend supports nestable atomic units: the outermost unit is a real
transaction that holds the backend's mutual exclusion until it finishes, inner
units are savepoints. Records carry a ``version`` used for optimistic
conditional updates.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConflictRetryable, DuplicateRecord, InvalidArgument, NotFound, StorageFailure
from .logging_config import get_logger


_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

_TIMESTAMP_FIELDS = ('created_at', 'updated_at')

logger = get_logger("ledger.storage")


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class StorageRecord:
    """Common identity and timestamps of every persisted record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {key: _plain(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        data = dict(data)
        for key in _TIMESTAMP_FIELDS:
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class StorageInterface(ABC):
    """Contract shared by the ledger's storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or overwrite"""

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert only; DuplicateRecord if the id is taken"""

    @abstractmethod
    def save_if_version(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> int:
        """
        Overwrite a record only if its stored version is `expected_version`

        Returns:
            The new version (expected_version + 1), also written into the record

        Raises:
            NotFound: If the record does not exist
            ConflictRetryable: If the stored version differs
        """

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """A copy of the record, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record of the table in insertion order"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """True if something was removed"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        ...

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose fields equal every filter value, in insertion order"""

    @abstractmethod
    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        ...

    @abstractmethod
    def clear_table(self, table: str) -> None:
        ...

    @abstractmethod
    def next_sequence(self, name: str) -> int:
        """Next value of a named counter, starting at 1; never reused"""

    @abstractmethod
    def close(self) -> None:
        ...

    # Transaction protocol; backends without transactions keep the no-ops

    def begin_transaction(self) -> None:
        """Open a transaction, or a savepoint inside an open one"""

    def commit(self) -> None:
        """Finish the innermost open level"""

    def rollback(self) -> None:
        """Undo the innermost open level"""

    def in_transaction(self) -> bool:
        """True if the calling thread has an open transaction"""
        return False

    @contextmanager
    def atomic(self):
        """
        Run the block as one atomic unit

        Yields the storage itself as the session handle. Any exception rolls
        back the work done inside this level and propagates.
        """
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()


def _copy(data: Any) -> Any:
    """Detach from caller-owned objects via a JSON round trip"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class InMemoryStorage(StorageInterface):
    """Process-local backend used by tests and throwaway ledgers"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()

        # Transaction state, only touched by the thread owning the lock
        self._depth = 0
        self._owner: Optional[int] = None
        self._undo_log: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self._savepoints: List[int] = []

    def _rows(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def _write(self, table: str, record_id: str, record: Optional[Dict[str, Any]]) -> None:
        """Replace or remove a row, remembering its previous state while a unit is open"""
        rows = self._rows(table)
        if self._depth:
            self._undo_log.append((table, record_id, rows.get(record_id)))
        if record is None:
            rows.pop(record_id, None)
        else:
            rows[record_id] = record

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._write(table, record_id, _copy(data))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            if record_id in self._rows(table):
                raise DuplicateRecord(f"Record {record_id} already exists in {table}")
            self._write(table, record_id, _copy(data))

    def save_if_version(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> int:
        with self._lock:
            current = self._rows(table).get(record_id)
            if current is None:
                raise NotFound(f"Record {record_id} not found in {table}")

            stored_version = current.get('version', 0)
            if stored_version != expected_version:
                raise ConflictRetryable(
                    f"Version conflict on {table}/{record_id}: "
                    f"expected {expected_version}, found {stored_version}"
                )

            record = _copy(data)
            record['version'] = expected_version + 1
            self._write(table, record_id, record)
            return record['version']

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._rows(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(r) for r in self._rows(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            if record_id not in self._rows(table):
                return False
            self._write(table, record_id, None)
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._rows(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(r) for r in self._rows(table).values() if _matches(r, filters)]

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            rows = self._rows(table).values()
            return sum(1 for r in rows if _matches(r, filters or {}))

    def clear_table(self, table: str) -> None:
        with self._lock:
            for record_id in list(self._rows(table)):
                self._write(table, record_id, None)

    def next_sequence(self, name: str) -> int:
        """Sequences are not rolled back; gaps are allowed"""
        with self._lock:
            self._sequences[name] = self._sequences.get(name, 0) + 1
            return self._sequences[name]

    def in_transaction(self) -> bool:
        return self._depth > 0 and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Start a transaction (or savepoint) and hold the storage lock"""
        self._lock.acquire()
        if self._depth:
            self._savepoints.append(len(self._undo_log))
        else:
            self._owner = threading.get_ident()
        self._depth += 1

    def commit(self) -> None:
        if not self.in_transaction():
            return
        self._depth -= 1
        if self._depth:
            # Savepoint released; its undo entries stay for the outer level
            self._savepoints.pop()
        else:
            self._undo_log.clear()
            self._owner = None
        self._lock.release()

    def rollback(self) -> None:
        """Undo every change made since the innermost level started"""
        if not self.in_transaction():
            return
        self._depth -= 1
        mark = self._savepoints.pop() if self._depth else 0
        while len(self._undo_log) > mark:
            table, record_id, previous = self._undo_log.pop()
            if previous is None:
                self._data[table].pop(record_id, None)
            else:
                self._data[table][record_id] = previous
        if not self._depth:
            self._owner = None
        self._lock.release()

    def close(self) -> None:
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Snapshot of every table, for inspection in tests"""
        with self._lock:
            return _copy(self._data)


class SQLiteStorage(StorageInterface):
    """
    SQLite backend: one table per record kind, the record as a JSON ``data``
    column plus its ``version``
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._owner: Optional[int] = None
        self._tables: set = set()

        with self._lock:
            if self.db_path != ":memory:":
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")
            self._execute(
                "CREATE TABLE IF NOT EXISTS _sequences (name TEXT PRIMARY KEY, value INTEGER NOT NULL)"
            )

    def _execute(self, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        """Execute a statement, translating driver errors into ledger errors"""
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise DuplicateRecord(f"Constraint violated: {e}") from e
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise ConflictRetryable(f"SQLite store busy: {e}") from e
            raise StorageFailure(f"SQLite operation failed: {e}") from e
        except sqlite3.Error as e:
            raise StorageFailure(f"SQLite operation failed: {e}") from e

    def _table(self, table: str) -> str:
        """Validated table name, created on first use"""
        if table in self._tables:
            return table
        if not _IDENTIFIER.match(table):
            raise InvalidArgument(f"Invalid table name: {table!r}")
        self._execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "id TEXT PRIMARY KEY, data TEXT NOT NULL, version INTEGER NOT NULL DEFAULT 0, "
            "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        self._tables.add(table)
        return table

    def _rows(self, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        return [json.loads(row['data']) for row in self._execute(sql, params).fetchall()]

    def _upsert(self, table: str, record_id: str, data: Dict[str, Any], overwrite: bool) -> None:
        now = datetime.now(timezone.utc).isoformat()
        conflict = (" ON CONFLICT(id) DO UPDATE SET data = excluded.data, "
                    "version = excluded.version, updated_at = excluded.updated_at") if overwrite else ""
        self._execute(
            f"INSERT INTO {self._table(table)} (id, data, version, created_at, updated_at) "
            f"VALUES (?, ?, ?, ?, ?){conflict}",
            (record_id, json.dumps(data, default=str), data.get('version', 0), now, now)
        )

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._upsert(table, record_id, data, overwrite=True)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            try:
                self._upsert(table, record_id, data, overwrite=False)
            except DuplicateRecord:
                raise DuplicateRecord(f"Record {record_id} already exists in {table}")

    def save_if_version(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> int:
        """Conditional UPDATE guarded by the version column"""
        with self._lock:
            new_version = expected_version + 1
            record = dict(data, version=new_version)
            cursor = self._execute(
                f"UPDATE {self._table(table)} SET data = ?, version = ?, updated_at = ? "
                "WHERE id = ? AND version = ?",
                (json.dumps(record, default=str), new_version,
                 datetime.now(timezone.utc).isoformat(), record_id, expected_version)
            )

            if cursor.rowcount == 0:
                if not self.exists(table, record_id):
                    raise NotFound(f"Record {record_id} not found in {table}")
                raise ConflictRetryable(
                    f"Version conflict on {table}/{record_id}: expected {expected_version}"
                )
            return new_version

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self._rows(f"SELECT data FROM {self._table(table)} WHERE id = ?", (record_id,))
            return rows[0] if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return self._rows(f"SELECT data FROM {self._table(table)} ORDER BY rowid")

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._execute(f"DELETE FROM {self._table(table)} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            row = self._execute(
                f"SELECT 1 FROM {self._table(table)} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def _where(self, filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        """WHERE clause comparing JSON fields of ``data``"""
        if not filters:
            return "", []

        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if not _IDENTIFIER.match(key):
                raise InvalidArgument(f"Invalid filter field: {key!r}")
            if value is None:
                conditions.append("json_type(data, ?) = 'null'")
                params.append(f"$.{key}")
            else:
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])
        return " WHERE " + " AND ".join(conditions), params

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            where, params = self._where(filters)
            return self._rows(
                f"SELECT data FROM {self._table(table)}{where} ORDER BY rowid", tuple(params)
            )

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            where, params = self._where(filters)
            row = self._execute(
                f"SELECT COUNT(*) AS n FROM {self._table(table)}{where}", tuple(params)
            ).fetchone()
            return row['n']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._execute(f"DELETE FROM {self._table(table)}")

    def next_sequence(self, name: str) -> int:
        """Increment a named counter in the _sequences table"""
        with self._lock:
            self._execute(
                "INSERT INTO _sequences (name, value) VALUES (?, 1) "
                "ON CONFLICT(name) DO UPDATE SET value = value + 1",
                (name,)
            )
            row = self._execute("SELECT value FROM _sequences WHERE name = ?", (name,)).fetchone()
            return row['value']

    def in_transaction(self) -> bool:
        return self._depth > 0 and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        """Start a transaction (or savepoint) and hold the connection lock"""
        if not self._lock.acquire(timeout=self.timeout):
            raise ConflictRetryable("Timed out waiting for the storage transaction lock")
        try:
            if self._depth:
                self._execute(f"SAVEPOINT sp_{self._depth}")
            else:
                self._execute("BEGIN IMMEDIATE")
                self._owner = threading.get_ident()
        except Exception:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        if not self.in_transaction():
            return
        self._depth -= 1
        try:
            if self._depth:
                self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            else:
                try:
                    self._execute("COMMIT")
                except Exception:
                    self._abort()
                    raise
        finally:
            if not self._depth:
                self._owner = None
            self._lock.release()

    def rollback(self) -> None:
        if not self.in_transaction():
            return
        self._depth -= 1
        try:
            if self._depth:
                self._execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
                self._tables.clear()
            else:
                self._abort()
        finally:
            if not self._depth:
                self._owner = None
            self._lock.release()

    def _abort(self) -> None:
        """Roll back the outermost transaction if SQLite still has it open"""
        # Tables created inside the transaction are gone after rollback
        self._tables.clear()
        if self._connection.in_transaction:
            self._execute("ROLLBACK")

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config) -> StorageInterface:
    """Create the storage backend selected by configuration"""
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        logger.info("Opening SQLite ledger store at %s", config.database_path)
        return SQLiteStorage(config.database_path, timeout=config.database_timeout)
    raise InvalidArgument(f"Unknown storage backend: {config.storage_backend}")
