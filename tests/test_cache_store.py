"""
Unit tests for CacheStore.

Covers single-flight fetches, TTL expiry with an injected clock, LRU
eviction, invalidation, copies, statistics, warming and change events.
"""
import threading
import time

import pytest

from app.cache import (
    MISSING,
    CacheEventKind,
    CacheStore,
    DataType,
    FetchError,
    TypeConfig,
    get_type_config,
)


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


# =============================================================================
# Reads
# =============================================================================

class TestGet:
    """Hit / miss behavior of get()."""

    def test_miss_fetches_then_hit_serves_cache(self, cache):
        calls = []

        def fetch():
            calls.append(1)
            return {"id": "p1", "price": 10}

        assert cache.get("p1", DataType.PRODUCTS, fetch) == {"id": "p1", "price": 10}
        assert cache.get("p1", DataType.PRODUCTS, fetch) == {"id": "p1", "price": 10}
        assert len(calls) == 1

    def test_same_key_different_types_are_separate(self, cache):
        cache.get("42", DataType.PRODUCTS, lambda: "product")
        assert cache.get("42", DataType.ORDERS, lambda: "order") == "order"

    def test_returned_values_are_copies(self, cache):
        first = cache.get("p1", DataType.PRODUCTS, lambda: {"tags": ["a"]})
        first["tags"].append("mutated")

        second = cache.get("p1", DataType.PRODUCTS, lambda: {"tags": ["never"]})
        assert second == {"tags": ["a"]}

    def test_set_stores_a_copy(self, cache):
        payload = {"tags": ["a"]}
        cache.set("p1", payload, DataType.PRODUCTS)
        payload["tags"].append("mutated")

        assert cache.peek("p1", DataType.PRODUCTS) == {"tags": ["a"]}

    def test_none_result_is_not_cached(self, cache):
        calls = []

        def fetch():
            calls.append(1)
            return None

        assert cache.get("gone", DataType.PRODUCTS, fetch) is None
        assert cache.get("gone", DataType.PRODUCTS, fetch) is None
        assert len(calls) == 2
        assert not cache.contains("gone", DataType.PRODUCTS)

    def test_fetch_error_propagates_and_is_not_cached(self, cache):
        def failing():
            raise FetchError("store down")

        with pytest.raises(FetchError):
            cache.get("p1", DataType.PRODUCTS, failing)

        assert cache.get("p1", DataType.PRODUCTS, lambda: "recovered") == "recovered"

    def test_peek_returns_missing_for_absent_key(self, cache):
        assert cache.peek("nope", DataType.PRODUCTS) is MISSING


class TestSingleFlight:
    """Concurrent gets for one key share one fetch."""

    def test_concurrent_gets_trigger_one_fetch(self, cache):
        release = threading.Event()
        calls = []
        results = []

        def fetch():
            calls.append(1)
            release.wait(5)
            return {"id": "p1"}

        def worker():
            results.append(cache.get("p1", DataType.PRODUCTS, fetch))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()

        wait_until(lambda: cache.get_stats()["coalescer"]["coalesced_requests"] == 7)
        release.set()
        for t in threads:
            t.join(5)

        assert len(calls) == 1
        assert results == [{"id": "p1"}] * 8
        assert cache.get_stats()["pending_requests"] == 0

    def test_waiters_receive_the_initiators_error(self, cache):
        release = threading.Event()
        errors = []

        def fetch():
            release.wait(5)
            raise FetchError("remote unavailable")

        def worker():
            try:
                cache.get("p1", DataType.PRODUCTS, fetch)
            except FetchError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()

        wait_until(lambda: cache.get_stats()["coalescer"]["coalesced_requests"] == 3)
        release.set()
        for t in threads:
            t.join(5)

        assert len(errors) == 4
        assert all(e.message == "remote unavailable" for e in errors)
        assert not cache.contains("p1", DataType.PRODUCTS)
        assert cache.get_stats()["pending_requests"] == 0

    def test_different_keys_fetch_independently(self, cache):
        calls = []

        def fetch_for(key):
            def fetch():
                calls.append(key)
                return key
            return fetch

        threads = [
            threading.Thread(target=cache.get, args=(k, DataType.PRODUCTS, fetch_for(k)))
            for k in ("a", "b", "c")
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert sorted(calls) == ["a", "b", "c"]


# =============================================================================
# Expiry and eviction
# =============================================================================

class TestTTL:

    def test_entry_expires_after_ttl(self, cache, clock):
        ttl = cache.type_config(DataType.CARTS).ttl_seconds
        calls = []

        def fetch():
            calls.append(1)
            return {"n": len(calls)}

        cache.get("cart:1", DataType.CARTS, fetch)
        clock.advance(ttl)
        assert cache.get("cart:1", DataType.CARTS, fetch) == {"n": 1}

        clock.advance(1)
        assert cache.get("cart:1", DataType.CARTS, fetch) == {"n": 2}
        assert cache.get_stats()["metrics"]["expirations"] == 1

    def test_ttl_depends_on_data_type(self, cache, clock):
        cache.set("cart:1", "cart", DataType.CARTS)
        cache.set("p1", "product", DataType.PRODUCTS)

        clock.advance(5 * 60)

        assert cache.peek("cart:1", DataType.CARTS) is MISSING
        assert cache.peek("p1", DataType.PRODUCTS) == "product"

    def test_unconfigured_type_uses_products_config(self):
        configs = {DataType.PRODUCTS: TypeConfig(ttl_seconds=10, max_items=5)}
        assert get_type_config(DataType.ORDERS, configs) == TypeConfig(ttl_seconds=10, max_items=5)

    def test_default_ttls(self, cache):
        assert cache.type_config(DataType.PRODUCTS) == TypeConfig(ttl_seconds=1800, max_items=1000)
        assert cache.type_config(DataType.CARTS) == TypeConfig(ttl_seconds=120, max_items=100)
        assert cache.type_config(DataType.RECOMMENDATIONS) == TypeConfig(ttl_seconds=7200, max_items=100)

    def test_cleanup_expired_sweeps_entries(self, cache, clock):
        cache.set("cart:1", "a", DataType.CARTS)
        cache.set("cart:2", "b", DataType.CARTS)
        cache.set("p1", "c", DataType.PRODUCTS)

        clock.advance(3 * 60)

        assert cache.cleanup_expired() == 2
        assert cache.get_stats()["entries"] == 1


class TestLRU:

    @pytest.fixture
    def small_cache(self, clock):
        store = CacheStore(
            type_configs={DataType.CARTS: TypeConfig(ttl_seconds=600, max_items=2)},
            clock=clock,
        )
        yield store
        store.dispose()

    def test_least_recently_used_is_evicted(self, small_cache, clock):
        small_cache.set("a", 1, DataType.CARTS)
        clock.advance(1)
        small_cache.set("b", 2, DataType.CARTS)
        clock.advance(1)
        small_cache.peek("a", DataType.CARTS)  # a is now more recent than b
        clock.advance(1)
        small_cache.set("c", 3, DataType.CARTS)

        assert small_cache.contains("a", DataType.CARTS)
        assert not small_cache.contains("b", DataType.CARTS)
        assert small_cache.contains("c", DataType.CARTS)
        assert small_cache.get_stats()["metrics"]["evictions"] == 1

    def test_ties_evict_oldest_insertion(self, small_cache):
        # The clock never moves, every access time is equal
        small_cache.set("first", 1, DataType.CARTS)
        small_cache.set("second", 2, DataType.CARTS)
        small_cache.set("third", 3, DataType.CARTS)

        assert not small_cache.contains("first", DataType.CARTS)
        assert small_cache.contains("second", DataType.CARTS)
        assert small_cache.contains("third", DataType.CARTS)

    def test_bound_is_per_data_type(self, small_cache):
        for i in range(5):
            small_cache.set(f"p{i}", i, DataType.PRODUCTS)
        small_cache.set("a", 1, DataType.CARTS)

        assert small_cache.get_stats()["type_breakdown"] == {"products": 5, "carts": 1}


# =============================================================================
# Writes
# =============================================================================

class TestInvalidate:

    def test_pattern_matches_substring_of_full_key(self, cache):
        cache.set("related:p1:4", [], DataType.PRODUCT_LISTS)
        cache.set("related:p2:4", [], DataType.PRODUCT_LISTS)
        cache.set("featured:6", [], DataType.PRODUCT_LISTS)

        assert cache.invalidate("related:", DataType.PRODUCT_LISTS) == 2
        assert cache.contains("featured:6", DataType.PRODUCT_LISTS)

    def test_data_type_scopes_the_match(self, cache):
        cache.set("42", "product", DataType.PRODUCTS)
        cache.set("42", "order", DataType.ORDERS)

        assert cache.invalidate("42", DataType.ORDERS) == 1
        assert cache.contains("42", DataType.PRODUCTS)

    def test_empty_pattern_without_type_matches_everything(self, cache):
        cache.set("a", 1, DataType.PRODUCTS)
        cache.set("b", 2, DataType.CARTS)
        assert cache.invalidate("") == 2
        assert cache.get_stats()["entries"] == 0

    def test_invalidated_key_is_refetched(self, cache):
        cache.get("p1", DataType.PRODUCTS, lambda: "old")
        cache.invalidate("p1", DataType.PRODUCTS)
        assert cache.get("p1", DataType.PRODUCTS, lambda: "new") == "new"

    def test_clear_drops_everything(self, cache):
        cache.set("a", 1, DataType.PRODUCTS)
        cache.set("b", 2, DataType.CARTS)
        assert cache.clear() == 2
        assert cache.peek("a", DataType.PRODUCTS) is MISSING


# =============================================================================
# Observation
# =============================================================================

class TestStats:

    def test_hit_rate(self, cache):
        cache.get("p1", DataType.PRODUCTS, lambda: 1)   # miss
        cache.get("p1", DataType.PRODUCTS, lambda: 1)   # hit
        cache.get("p1", DataType.PRODUCTS, lambda: 1)   # hit
        cache.get("p2", DataType.PRODUCTS, lambda: 2)   # miss

        stats = cache.get_stats()
        assert stats["metrics"]["requests"] == 4
        assert stats["metrics"]["hits"] == 2
        assert stats["metrics"]["misses"] == 2
        assert stats["hit_rate_percent"] == 50.0
        assert stats["entries"] == 2
        assert stats["total_size_bytes"] > 0

    def test_report_resets_counters(self, cache):
        cache.get("p1", DataType.PRODUCTS, lambda: 1)
        cache.get("p1", DataType.PRODUCTS, lambda: 1)

        report = cache.report()
        assert report["hits"] == 1
        assert report["entries"] == 1
        assert cache.get_stats()["metrics"]["requests"] == 0


class TestWarm:

    def test_warm_loads_missing_keys_and_reports_failures(self, cache):
        cache.set("p1", "cached", DataType.PRODUCTS)

        def fetch(key):
            if key == "bad":
                raise FetchError("boom")
            return f"value-{key}"

        results = {r.key: r for r in cache.warm(["p1", "p2", "bad", "p2"], DataType.PRODUCTS, fetch)}

        assert set(results) == {"p1", "p2", "bad"}
        assert results["p1"].from_cache
        assert results["p2"].success and not results["p2"].from_cache
        assert not results["bad"].success
        assert "boom" in results["bad"].error
        assert cache.peek("p2", DataType.PRODUCTS) == "value-p2"


class TestEvents:

    def test_subscribers_see_set_and_invalidate(self, cache):
        events = []
        unsubscribe = cache.subscribe(events.append)

        cache.set("p1", {"v": 1}, DataType.PRODUCTS)
        cache.invalidate("p1", DataType.PRODUCTS)

        assert [e.kind for e in events] == [CacheEventKind.SET, CacheEventKind.INVALIDATED]
        assert events[0].data == {"v": 1}

        unsubscribe()
        cache.set("p2", 2, DataType.PRODUCTS)
        assert len(events) == 2

    def test_failing_listener_does_not_break_writes(self, cache):
        def broken(event):
            raise RuntimeError("listener bug")

        cache.subscribe(broken)
        cache.set("p1", 1, DataType.PRODUCTS)
        assert cache.peek("p1", DataType.PRODUCTS) == 1

    def test_event_payload_is_a_copy(self, cache):
        seen = []
        cache.subscribe(seen.append)
        cache.set("p1", {"tags": []}, DataType.PRODUCTS)

        seen[0].data["tags"].append("mutated")
        assert cache.peek("p1", DataType.PRODUCTS) == {"tags": []}


class TestMaintenance:

    def test_start_and_dispose(self, clock):
        store = CacheStore(clock=clock)
        store.start_maintenance(cleanup_interval=60, report_interval=60)
        assert store.get_stats()["maintenance_running"]

        store.dispose()
        assert not store.get_stats()["maintenance_running"]
