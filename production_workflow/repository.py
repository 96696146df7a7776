"""In-memory repositories with atomic conditional updates."""

from __future__ import annotations

import copy
import threading
from dataclasses import asdict
from typing import (
    Callable,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    MutableMapping,
    Optional,
    Tuple,
    TypeVar,
)

from .errors import ConflictError, NotFoundError

T = TypeVar("T")
R = TypeVar("R")


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError, ConflictError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(RepositoryError, NotFoundError):
    """Raised when a requested record is missing."""


class ConcurrentUpdateError(RepositoryError, ConflictError):
    """Raised when a conditional update loses against another writer."""


class InMemoryRepository(Generic[T]):
    """Generic repository backed by a dictionary of versioned records.

    Records are copied on the way in and out so that callers never share
    mutable state with the store; the only way to change a stored record is
    to replace it (``add``/``upsert``) or to go through
    :meth:`conditional_update`.
    """

    def __init__(self) -> None:
        self._items: MutableMapping[str, T] = {}
        self._versions: Dict[str, int] = {}
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, item_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(item_id, threading.Lock())

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, item_id: str, item: T) -> None:
        with self._lock_for(item_id):
            if item_id in self._items:
                raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
            self._items[item_id] = copy.deepcopy(item)
            self._versions[item_id] = 1

    def upsert(self, item_id: str, item: T) -> None:
        with self._lock_for(item_id):
            self._items[item_id] = copy.deepcopy(item)
            self._versions[item_id] = self._versions.get(item_id, 0) + 1

    def get(self, item_id: str) -> T:
        return self.get_versioned(item_id)[0]

    def get_versioned(self, item_id: str) -> Tuple[T, int]:
        with self._lock_for(item_id):
            try:
                item = self._items[item_id]
            except KeyError as exc:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc
            return copy.deepcopy(item), self._versions[item_id]

    def conditional_update(
        self,
        item_id: str,
        apply: Callable[[T], R],
        *,
        expect: Optional[Callable[[T], bool]] = None,
        expected_version: Optional[int] = None,
    ) -> Tuple[T, R]:
        """Atomically load, check, mutate and store one record.

        ``apply`` mutates the fresh copy in place; if it raises, nothing is
        stored. Returns the stored record and ``apply``'s return value.
        """

        with self._lock_for(item_id):
            try:
                current = copy.deepcopy(self._items[item_id])
            except KeyError as exc:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc
            version = self._versions[item_id]
            if expected_version is not None and expected_version != version:
                raise ConcurrentUpdateError(
                    f"Record {item_id!r} changed (version {version}, expected {expected_version})"
                )
            if expect is not None and not expect(current):
                raise ConcurrentUpdateError(
                    f"Record {item_id!r} was modified by another request"
                )
            result = apply(current)
            self._items[item_id] = copy.deepcopy(current)
            self._versions[item_id] = version + 1
            return current, result

    def remove(self, item_id: str) -> None:
        with self._lock_for(item_id):
            if item_id not in self._items:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")
            del self._items[item_id]
            del self._versions[item_id]
            with self._guard:
                self._locks.pop(item_id, None)

    def list(self) -> List[T]:
        return [copy.deepcopy(item) for item in list(self._items.values())]

    def as_dicts(self) -> Iterable[Dict]:  # pragma: no cover - convenience
        for item in self.list():
            yield asdict(item)

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())


__all__ = [
    "InMemoryRepository",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "ConcurrentUpdateError",
]
