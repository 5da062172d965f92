"""
leafpledge.database.kv_store — Key-Value Store Adapters
========================================================

The pipeline persists everything as JSON documents under tenant-namespaced
keys.  Only single-key atomicity is assumed, exposed through three
primitives on top of plain get/set/delete:

* :meth:`KeyValueStore.create_if_absent` — atomic insert; the award
  idempotency record and the batch lease are built on it.
* :meth:`KeyValueStore.get_versioned` / :meth:`KeyValueStore.compare_and_set`
  — optimistic concurrency for read-modify-write counters.
* :meth:`KeyValueStore.scan_prefix` — ordered range scan, used by the
  tenant directory.

Two adapters ship here: :class:`MemoryKeyValueStore` (tests, local runs)
and :class:`SqlKeyValueStore` (SQLAlchemy, one ``kv_entries`` table).
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leafpledge.database.engine import get_session
from leafpledge.database.models import KvEntry
from leafpledge.errors import PersistenceError

logger = logging.getLogger(__name__)

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SqlKeyValueStore"]

# How many compare-and-set rounds :meth:`KeyValueStore.update` tries before
# giving up on a hot key.
MAX_CAS_RETRIES = 10


class KeyValueStore(ABC):
    """Abstract key-value store.  Values must be JSON-serialisable."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the stored value, or ``None`` when the key is absent."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Insert or overwrite *key*."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*; a missing key is not an error."""

    @abstractmethod
    def create_if_absent(self, key: str, value: Any) -> bool:
        """Atomically insert *key*.  Returns False if it already existed."""

    @abstractmethod
    def get_versioned(self, key: str) -> tuple[Any | None, int]:
        """Return ``(value, version)``; version 0 means the key is absent."""

    @abstractmethod
    def compare_and_set(self, key: str, value: Any, expected_version: int) -> bool:
        """Write *value* only if the stored version still equals *expected_version*.

        ``expected_version=0`` means "only if absent".
        """

    @abstractmethod
    def scan_prefix(self, prefix: str) -> list[tuple[str, Any]]:
        """Return ``(key, value)`` pairs whose key starts with *prefix*, sorted by key."""

    def update(self, key: str, mutate: Callable[[Any | None], Any]) -> Any:
        """Optimistic read-modify-write.

        *mutate* receives the current value (``None`` if absent) and returns
        the new value.  It may be called more than once under contention, so
        it must not have side effects.
        """
        for attempt in range(1, MAX_CAS_RETRIES + 1):
            current, version = self.get_versioned(key)
            new_value = mutate(copy.deepcopy(current))
            if self.compare_and_set(key, new_value, version):
                return new_value
            logger.debug("CAS conflict on %s (attempt %d)", key, attempt)
        raise PersistenceError(
            f"Gave up updating {key} after {MAX_CAS_RETRIES} concurrent conflicts",
            key=key,
        )


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------
class MemoryKeyValueStore(KeyValueStore):
    """Thread-safe dict-backed store.

    Values are deep-copied on the way in and out so callers can never
    mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, tuple[Any, int]] = {}

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._data.get(key)
        return copy.deepcopy(entry[0]) if entry else None

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            _, version = self._data.get(key, (None, 0))
            self._data[key] = (copy.deepcopy(value), version + 1)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def create_if_absent(self, key: str, value: Any) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = (copy.deepcopy(value), 1)
            return True

    def get_versioned(self, key: str) -> tuple[Any | None, int]:
        with self._lock:
            value, version = self._data.get(key, (None, 0))
        return copy.deepcopy(value), version

    def compare_and_set(self, key: str, value: Any, expected_version: int) -> bool:
        with self._lock:
            _, version = self._data.get(key, (None, 0))
            if version != expected_version:
                return False
            self._data[key] = (copy.deepcopy(value), version + 1)
            return True

    def scan_prefix(self, prefix: str) -> list[tuple[str, Any]]:
        with self._lock:
            items = [
                (k, copy.deepcopy(v)) for k, (v, _) in self._data.items()
                if k.startswith(prefix)
            ]
        return sorted(items, key=lambda kv: kv[0])

    def __len__(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# SQLAlchemy adapter
# ---------------------------------------------------------------------------
class SqlKeyValueStore(KeyValueStore):
    """Store backed by the ``kv_entries`` table.

    Every public method runs in its own short transaction.  Driver errors
    are re-raised as :class:`~leafpledge.errors.PersistenceError`.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @contextmanager
    def _session(self, key: str | None) -> Iterator[Session]:
        try:
            with get_session(self._engine) as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Storage failure: {exc}", key=key) from exc

    def get(self, key: str) -> Any | None:
        with self._session(key) as session:
            row = session.get(KvEntry, key)
            return row.value if row is not None else None

    def set(self, key: str, value: Any) -> None:
        with self._session(key) as session:
            row = session.get(KvEntry, key)
            if row is None:
                try:
                    with session.begin_nested():   # SAVEPOINT
                        session.add(KvEntry(key=key, value=value, version=1))
                        session.flush()
                    return
                except IntegrityError:
                    # Lost an insert race; fall through to overwrite.
                    row = session.get(KvEntry, key, populate_existing=True)
            row.value = value
            row.version += 1

    def delete(self, key: str) -> None:
        with self._session(key) as session:
            session.execute(delete(KvEntry).where(KvEntry.key == key))

    def create_if_absent(self, key: str, value: Any) -> bool:
        with self._session(key) as session:
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(KvEntry(key=key, value=value, version=1))
                    session.flush()
            except IntegrityError:
                # Primary key already taken.
                return False
            return True

    def get_versioned(self, key: str) -> tuple[Any | None, int]:
        with self._session(key) as session:
            row = session.get(KvEntry, key)
            if row is None:
                return None, 0
            return row.value, row.version

    def compare_and_set(self, key: str, value: Any, expected_version: int) -> bool:
        if expected_version == 0:
            return self.create_if_absent(key, value)
        with self._session(key) as session:
            result = session.execute(
                update(KvEntry)
                .where(KvEntry.key == key, KvEntry.version == expected_version)
                .values(value=value, version=expected_version + 1)
            )
            return result.rowcount == 1

    def scan_prefix(self, prefix: str) -> list[tuple[str, Any]]:
        with self._session(prefix) as session:
            rows = session.execute(
                select(KvEntry.key, KvEntry.value)
                .where(KvEntry.key.startswith(prefix, autoescape=True))
                .order_by(KvEntry.key)
            ).all()
            return [(row.key, row.value) for row in rows]
