"""
Unit tests for RequestCoalescer.
"""
import threading
import time

import pytest

from app.cache import MISSING, RequestCoalescer


class TestRequestCoalescer:

    def test_single_caller_fetches(self):
        coalescer = RequestCoalescer()
        assert coalescer.get_or_fetch("k", lambda: 42) == 42
        assert coalescer.active_requests == 0

    def test_lookup_hit_skips_fetch(self):
        coalescer = RequestCoalescer()

        def fetch():
            raise AssertionError("should not fetch")

        assert coalescer.get_or_fetch("k", fetch, lookup=lambda: "cached") == "cached"

    def test_lookup_missing_fetches_and_stores(self):
        coalescer = RequestCoalescer()
        stored = []

        result = coalescer.get_or_fetch(
            "k", lambda: "fresh", lookup=lambda: MISSING, on_result=stored.append
        )

        assert result == "fresh"
        assert stored == ["fresh"]

    def test_on_result_runs_before_registry_entry_is_removed(self):
        coalescer = RequestCoalescer()
        seen = []

        coalescer.get_or_fetch("k", lambda: 1, on_result=lambda _: seen.append(coalescer.is_pending("k")))

        assert seen == [True]
        assert not coalescer.is_pending("k")

    def test_on_result_not_called_on_failure(self):
        coalescer = RequestCoalescer()
        stored = []

        def fetch():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            coalescer.get_or_fetch("k", fetch, on_result=stored.append)
        assert stored == []
        assert coalescer.active_requests == 0

    def test_waiters_share_result(self):
        coalescer = RequestCoalescer()
        release = threading.Event()
        calls = []
        results = []

        def fetch():
            calls.append(1)
            release.wait(5)
            return "shared"

        threads = [
            threading.Thread(target=lambda: results.append(coalescer.get_or_fetch("k", fetch)))
            for _ in range(5)
        ]
        for t in threads:
            t.start()

        deadline = time.monotonic() + 5
        while coalescer.get_stats()["coalesced_requests"] < 4 and time.monotonic() < deadline:
            time.sleep(0.005)
        assert coalescer.get_stats()["active_keys"] == ["k"]

        release.set()
        for t in threads:
            t.join(5)

        assert len(calls) == 1
        assert results == ["shared"] * 5
        assert coalescer.get_stats()["active_requests"] == 0

    def test_waiter_timeout(self):
        coalescer = RequestCoalescer(timeout=0.05)
        release = threading.Event()
        started = threading.Event()

        def slow():
            started.set()
            release.wait(5)
            return "late"

        initiator = threading.Thread(target=coalescer.get_or_fetch, args=("k", slow))
        initiator.start()
        started.wait(5)

        with pytest.raises(TimeoutError):
            coalescer.get_or_fetch("k", lambda: "unused")

        release.set()
        initiator.join(5)
