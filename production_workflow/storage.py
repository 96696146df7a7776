"""SQLite-backed persistence for the production workflow engine."""

from __future__ import annotations

import logging
import pickle
import sqlite3
import threading
from typing import Callable, Generic, Iterator, List, Optional, Tuple, TypeVar

from .domain import Machine, Operator, Order, ProductionTable
from .repository import (
    ConcurrentUpdateError,
    DuplicateRecordError,
    RecordNotFoundError,
)

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)


class SQLiteRepository(Generic[T]):
    """Repository implementation that persists versioned records inside SQLite."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        self._connection = connection
        self._table = table
        self._lock = lock or threading.RLock()
        with self._lock:
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
                "id TEXT PRIMARY KEY, version INTEGER NOT NULL, payload BLOB NOT NULL)"
            )
            self._connection.commit()

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        with self._lock:
            cursor = self._connection.execute(
                f"SELECT 1 FROM {self._table} WHERE id = ? LIMIT 1", (item_id,)
            )
            return cursor.fetchone() is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:
        with self._lock:
            cursor = self._connection.execute(
                f"SELECT COUNT(1) FROM {self._table}"
            )
            value = cursor.fetchone()
        return int(value[0]) if value else 0

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        payload = pickle.dumps(item)
        with self._lock:
            try:
                self._connection.execute(
                    f"INSERT INTO {self._table} (id, version, payload) VALUES (?, 1, ?)",
                    (item_id, payload),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateRecordError(
                    f"Record with id {item_id!r} already exists"
                ) from exc
            self._connection.commit()

    def upsert(self, item_id: str, item: T) -> None:
        payload = pickle.dumps(item)
        with self._lock:
            self._connection.execute(
                f"INSERT INTO {self._table} (id, version, payload) VALUES (?, 1, ?) "
                "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, "
                f"version = {self._table}.version + 1",
                (item_id, payload),
            )
            self._connection.commit()

    def get(self, item_id: str) -> T:
        return self.get_versioned(item_id)[0]

    def get_versioned(self, item_id: str) -> Tuple[T, int]:
        with self._lock:
            cursor = self._connection.execute(
                f"SELECT payload, version FROM {self._table} WHERE id = ?", (item_id,)
            )
            row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        return pickle.loads(row[0]), int(row[1])

    def conditional_update(
        self,
        item_id: str,
        apply: Callable[[T], R],
        *,
        expect: Optional[Callable[[T], bool]] = None,
        expected_version: Optional[int] = None,
    ) -> Tuple[T, R]:
        """Load, check, mutate and store one record inside a write transaction.

        The final ``UPDATE`` is guarded by the version read inside the same
        transaction, so writers in other processes sharing the file are
        detected as well.
        """

        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE")
            try:
                cursor = self._connection.execute(
                    f"SELECT payload, version FROM {self._table} WHERE id = ?",
                    (item_id,),
                )
                row = cursor.fetchone()
                if row is None:
                    raise RecordNotFoundError(f"Record with id {item_id!r} not found")
                current: T = pickle.loads(row[0])
                version = int(row[1])
                if expected_version is not None and expected_version != version:
                    raise ConcurrentUpdateError(
                        f"Record {item_id!r} changed (version {version}, "
                        f"expected {expected_version})"
                    )
                if expect is not None and not expect(current):
                    raise ConcurrentUpdateError(
                        f"Record {item_id!r} was modified by another request"
                    )
                result = apply(current)
                cursor = self._connection.execute(
                    f"UPDATE {self._table} SET payload = ?, version = ? "
                    "WHERE id = ? AND version = ?",
                    (pickle.dumps(current), version + 1, item_id, version),
                )
                if cursor.rowcount != 1:
                    raise ConcurrentUpdateError(
                        f"Record {item_id!r} was modified by another request"
                    )
            except BaseException:
                self._connection.rollback()
                raise
            self._connection.commit()
            return current, result

    def remove(self, item_id: str) -> None:
        with self._lock:
            cursor = self._connection.execute(
                f"DELETE FROM {self._table} WHERE id = ?", (item_id,)
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")
            self._connection.commit()

    def list(self) -> List[T]:
        with self._lock:
            cursor = self._connection.execute(
                f"SELECT payload FROM {self._table} ORDER BY id"
            )
            rows = cursor.fetchall()
        return [pickle.loads(row[0]) for row in rows]


class WorkflowDatabase:
    """Convenience facade bundling SQLite repositories for all aggregates."""

    def __init__(self, path: str) -> None:
        connection = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        connection.row_factory = sqlite3.Row
        self._connection = connection
        self._lock = threading.RLock()
        self.orders = SQLiteRepository[Order](connection, "orders", self._lock)
        self.tables = SQLiteRepository[ProductionTable](
            connection, "production_tables", self._lock
        )
        self.machines = SQLiteRepository[Machine](connection, "machines", self._lock)
        self.operators = SQLiteRepository[Operator](connection, "operators", self._lock)
        logger.info("Opened workflow database at %s", path)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "WorkflowDatabase":  # pragma: no cover - convenience
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:  # pragma: no cover - convenience
        self.close()


__all__ = ["SQLiteRepository", "WorkflowDatabase"]
