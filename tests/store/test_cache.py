"""Tests for the persistent query cache."""

from __future__ import annotations

import time
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from codeweave.store.cache import QueryCacheStore, cache_key, eviction_order, normalize_intent
from codeweave.store.database import Database


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    database = Database(tmp_path / "index.db")
    database.create_all()
    yield database
    database.dispose()


class TestCacheKey:
    def test_intent_whitespace_and_case_are_normalized(self) -> None:
        assert normalize_intent("  Parse   Config\n") == "parse config"
        assert cache_key("Parse config", {"budget": 5}, 1) == cache_key(
            "parse  CONFIG", {"budget": 5}, 1
        )

    def test_parameters_and_version_change_the_key(self) -> None:
        base = cache_key("parse config", {"budget": 5}, 1)

        assert cache_key("parse config", {"budget": 6}, 1) != base
        assert cache_key("parse config", {"budget": 5}, 2) != base

    def test_parameter_order_does_not_matter(self) -> None:
        assert cache_key("q", {"a": 1, "b": 2}, 1) == cache_key("q", {"b": 2, "a": 1}, 1)


class TestQueryCacheStore:
    def test_miss_then_hit_counts_accesses(self, db: Database) -> None:
        cache = QueryCacheStore(db, capacity=10)

        assert cache.lookup("k", 1) is None
        cache.store("k", '{"results": []}', 1)
        hit = cache.lookup("k", 1)

        assert hit is not None
        assert hit.payload == '{"results": []}'
        assert hit.access_count == 2

    def test_lookup_filters_on_index_version(self, db: Database) -> None:
        cache = QueryCacheStore(db, capacity=10)
        cache.store("k", "payload", 1)

        assert cache.lookup("k", 2) is None
        entry = cache.get("k")
        assert entry is not None
        assert entry.access_count == 1

    def test_store_is_bounded_by_capacity(self, db: Database) -> None:
        cache = QueryCacheStore(db, capacity=3)

        evicted = [cache.store(f"k{i}", "p", 1) for i in range(5)]

        assert sum(evicted) == 2
        assert cache.count() == 3

    def test_frequently_hit_entry_survives_eviction(self, db: Database) -> None:
        cache = QueryCacheStore(db, capacity=2)
        cache.store("cold", "p", 1)
        cache.store("hot", "p", 1)
        for _ in range(5):
            cache.lookup("hot", 1)

        cache.store("newest", "p", 1)

        assert {e.key_hash for e in cache.entries()} == {"hot", "newest"}

    def test_concurrent_hits_are_all_counted(self, db: Database) -> None:
        cache = QueryCacheStore(db, capacity=10)
        cache.store("k", "payload", 1)

        def hit(_: int) -> None:
            assert cache.lookup("k", 1) is not None

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(hit, range(40)))

        entry = cache.get("k")
        assert entry is not None
        assert entry.access_count == 41

    def test_miss_does_not_wait_for_a_writer(self, db: Database) -> None:
        cache = QueryCacheStore(db, capacity=10)
        cache.store("k", "payload", 1)

        writer = db.open_writer()
        try:
            start = time.monotonic()
            assert cache.lookup("k", 2) is None
            assert cache.lookup("absent", 1) is None
            elapsed = time.monotonic() - start
        finally:
            writer.rollback()
            writer.close()

        assert elapsed < 0.5
        assert cache.lookup("k", 1) is not None


class TestEvictionOrder:
    def test_lowest_combined_rank_goes_first(self) -> None:
        entries = [("old", 1.0, 1), ("hot", 2.0, 5), ("new", 3.0, 1)]

        assert eviction_order(entries) == ["old", "hot", "new"]

    def test_ties_break_on_key(self) -> None:
        assert eviction_order([("b", 1.0, 1), ("a", 1.0, 1)]) == ["a", "b"]
