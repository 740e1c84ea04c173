"""
Unit tests for OptimisticMutator: speculative visibility, reconcile on
success, rollback on failure.
"""
import threading

import pytest

from app.cache import CacheEventKind, DataType, OptimisticMutator, WriteError


@pytest.fixture
def mutator(cache):
    return OptimisticMutator(cache)


def add_line(cart):
    cart["items"].append("new")
    return cart


class TestOptimisticMutator:

    def test_success_returns_speculative_and_invalidates(self, cache, mutator):
        cache.set("cart:1", {"items": ["a"]}, DataType.CARTS)

        result = mutator.mutate(
            "cart:1", DataType.CARTS,
            fetch_fn=lambda: {"items": []},
            transform_fn=add_line,
            remote_write_fn=lambda state: "written",
        )

        assert result.speculative == {"items": ["a", "new"]}
        assert result.remote_result == "written"
        assert not cache.contains("cart:1", DataType.CARTS)

    def test_speculative_state_visible_during_write(self, cache, mutator):
        cache.set("cart:1", {"items": ["a"]}, DataType.CARTS)
        seen = []

        def remote_write(state):
            seen.append(cache.peek("cart:1", DataType.CARTS))
            return None

        mutator.mutate("cart:1", DataType.CARTS, lambda: None, add_line, remote_write)

        assert seen == [{"items": ["a", "new"]}]

    def test_failure_restores_snapshot_and_reraises(self, cache, mutator):
        cache.set("cart:1", {"items": ["a"]}, DataType.CARTS)

        def failing_write(state):
            raise WriteError("remote rejected")

        with pytest.raises(WriteError, match="remote rejected"):
            mutator.mutate("cart:1", DataType.CARTS, lambda: None, add_line, failing_write)

        assert cache.peek("cart:1", DataType.CARTS) == {"items": ["a"]}

    def test_rollback_event_is_published(self, cache, mutator):
        cache.set("cart:1", {"items": ["a"]}, DataType.CARTS)
        events = []
        cache.subscribe(events.append)

        def failing_write(state):
            raise WriteError()

        with pytest.raises(WriteError):
            mutator.mutate("cart:1", DataType.CARTS, lambda: None, add_line, failing_write)

        kinds = [e.kind for e in events]
        assert kinds == [CacheEventKind.SET, CacheEventKind.SET, CacheEventKind.ROLLED_BACK]
        assert events[-1].data == {"items": ["a"]}

    def test_snapshot_fetched_when_not_cached(self, cache, mutator):
        def failing_write(state):
            raise WriteError()

        with pytest.raises(WriteError):
            mutator.mutate(
                "cart:1", DataType.CARTS,
                fetch_fn=lambda: {"items": ["remote"]},
                transform_fn=add_line,
                remote_write_fn=failing_write,
            )

        assert cache.peek("cart:1", DataType.CARTS) == {"items": ["remote"]}

    def test_transform_failure_leaves_cache_untouched(self, cache, mutator):
        cache.set("cart:1", {"items": ["a"]}, DataType.CARTS)
        writes = []

        def bad_transform(cart):
            raise ValueError("invalid change")

        with pytest.raises(ValueError):
            mutator.mutate("cart:1", DataType.CARTS, lambda: None, bad_transform, writes.append)

        assert writes == []
        assert cache.peek("cart:1", DataType.CARTS) == {"items": ["a"]}

    def test_remote_write_receives_a_copy(self, cache, mutator):
        cache.set("cart:1", {"items": []}, DataType.CARTS)
        seen_in_cache = []

        def mutating_write(state):
            state["items"].append("tampered")
            seen_in_cache.append(cache.peek("cart:1", DataType.CARTS))

        mutator.mutate("cart:1", DataType.CARTS, lambda: None, add_line, mutating_write)

        assert seen_in_cache == [{"items": ["new"]}]

    def test_same_aggregate_mutations_are_serialized(self, cache, mutator):
        cache.set("cart:1", {"items": []}, DataType.CARTS)
        active = []
        overlap = []
        lock = threading.Lock()

        def slow_write(state):
            with lock:
                active.append(1)
                if len(active) > 1:
                    overlap.append(1)
            threading.Event().wait(0.02)
            with lock:
                active.pop()

        threads = [
            threading.Thread(
                target=mutator.mutate,
                args=("cart:1", DataType.CARTS, lambda: {"items": []}, add_line, slow_write),
            )
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert overlap == []
        assert mutator.active_aggregates == 0

    def test_aggregate_locks_are_released_after_use(self, cache, mutator):
        seen = []

        def remote_write(state):
            seen.append(mutator.active_aggregates)

        for user in range(5):
            mutator.mutate(f"cart:{user}", DataType.CARTS, lambda: {"items": []}, add_line, remote_write)

        def failing_write(state):
            raise WriteError()

        with pytest.raises(WriteError):
            mutator.mutate("cart:9", DataType.CARTS, lambda: {"items": []}, add_line, failing_write)

        assert seen == [1] * 5
        assert mutator.active_aggregates == 0
