"""
tests/test_kv_store.py — Key-Value Store Adapter Tests
=======================================================

Runs the same contract against the in-memory and SQLAlchemy adapters:
plain get/set/delete, atomic create-if-absent, versioned compare-and-set,
prefix scans and the optimistic ``update`` loop.
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from leafpledge.database.kv_store import (
    MAX_CAS_RETRIES,
    MemoryKeyValueStore,
    SqlKeyValueStore,
)
from leafpledge.errors import PersistenceError


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return request.getfixturevalue("sql_store")


# ---------------------------------------------------------------------------
# Basic operations
# ---------------------------------------------------------------------------
class TestBasics:
    def test_missing_key_is_none(self, store):
        assert store.get("nope") is None

    def test_set_then_get(self, store):
        store.set("cfg:t1:v1", {"a": 1, "nested": {"b": [1, 2]}})
        assert store.get("cfg:t1:v1") == {"a": 1, "nested": {"b": [1, 2]}}

    def test_set_overwrites(self, store):
        store.set("k", {"v": 1})
        store.set("k", {"v": 2})
        assert store.get("k") == {"v": 2}

    def test_delete(self, store):
        store.set("k", {"v": 1})
        store.delete("k")
        assert store.get("k") is None

    def test_delete_missing_is_noop(self, store):
        store.delete("never-written")


# ---------------------------------------------------------------------------
# Atomic primitives
# ---------------------------------------------------------------------------
class TestCreateIfAbsent:
    def test_first_insert_wins(self, store):
        assert store.create_if_absent("awardLedger:t1:abc", {"leaves": 25}) is True
        assert store.create_if_absent("awardLedger:t1:abc", {"leaves": 99}) is False
        assert store.get("awardLedger:t1:abc") == {"leaves": 25}


class TestCompareAndSet:
    def test_absent_key_has_version_zero(self, store):
        assert store.get_versioned("k") == (None, 0)

    def test_versions_increase(self, store):
        store.set("k", {"n": 1})
        _, v1 = store.get_versioned("k")
        store.set("k", {"n": 2})
        _, v2 = store.get_versioned("k")
        assert v2 == v1 + 1

    def test_cas_with_current_version(self, store):
        store.set("k", {"n": 1})
        _, version = store.get_versioned("k")
        assert store.compare_and_set("k", {"n": 2}, version) is True
        assert store.get_versioned("k") == ({"n": 2}, version + 1)

    def test_cas_with_stale_version_fails(self, store):
        store.set("k", {"n": 1})
        _, version = store.get_versioned("k")
        store.set("k", {"n": 5})
        assert store.compare_and_set("k", {"n": 2}, version) is False
        assert store.get("k") == {"n": 5}

    def test_cas_zero_means_only_if_absent(self, store):
        assert store.compare_and_set("k", {"n": 1}, 0) is True
        assert store.compare_and_set("k", {"n": 2}, 0) is False
        assert store.get("k") == {"n": 1}


class TestScanPrefix:
    def test_sorted_and_filtered(self, store):
        store.set("tenant:b", {"id": "b"})
        store.set("tenant:a", {"id": "a"})
        store.set("tenantx", {"id": "x"})
        store.set("cfg:a:v1", {})
        assert store.scan_prefix("tenant:") == [
            ("tenant:a", {"id": "a"}),
            ("tenant:b", {"id": "b"}),
        ]

    def test_wildcard_characters_are_literal(self, store):
        store.set("a_b:1", {})
        store.set("axb:1", {})
        store.set("a%b:1", {})
        assert [k for k, _ in store.scan_prefix("a_b")] == ["a_b:1"]
        assert [k for k, _ in store.scan_prefix("a%")] == ["a%b:1"]


# ---------------------------------------------------------------------------
# Optimistic update loop
# ---------------------------------------------------------------------------
class TestUpdate:
    def test_creates_when_absent(self, store):
        result = store.update("counter", lambda cur: {"n": (cur or {"n": 0})["n"] + 1})
        assert result == {"n": 1}
        assert store.get("counter") == {"n": 1}

    def test_sequential_updates_accumulate(self, store):
        for _ in range(5):
            store.update("counter", lambda cur: {"n": (cur or {"n": 0})["n"] + 1})
        assert store.get("counter") == {"n": 5}

    def test_gives_up_after_repeated_conflicts(self):
        class AlwaysConflicting(MemoryKeyValueStore):
            calls = 0

            def compare_and_set(self, key, value, expected_version):
                self.calls += 1
                return False

        store = AlwaysConflicting()
        with pytest.raises(PersistenceError) as exc_info:
            store.update("hot", lambda cur: {"n": 1})
        assert exc_info.value.key == "hot"
        assert store.calls == MAX_CAS_RETRIES

    def test_concurrent_updates_lose_nothing(self, memory_store):
        def bump():
            for _ in range(50):
                memory_store.update("counter", lambda cur: {"n": (cur or {"n": 0})["n"] + 1})

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert memory_store.get("counter") == {"n": 200}


class TestMemoryIsolation:
    def test_returned_values_are_copies(self, memory_store):
        memory_store.set("k", {"items": [1]})
        memory_store.get("k")["items"].append(2)
        assert memory_store.get("k") == {"items": [1]}


class TestSqlErrors:
    def test_driver_errors_become_persistence_errors(self):
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        store = SqlKeyValueStore(engine)  # table never created
        with pytest.raises(PersistenceError) as exc_info:
            store.get("cfg:t1:v1")
        assert exc_info.value.key == "cfg:t1:v1"
