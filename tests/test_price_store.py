"""
Tests for PriceStore and DepthBook.
"""

import math
import threading

import pytest

from hedgearb.core.types import DepthBook, DepthLevel, DepthUpdate
from hedgearb.market_data.price_store import PriceStore, UpdateResult


class TestUpsert:
    def test_stores_valid_price(self, store):
        assert store.upsert("binance", 100.5) is UpdateResult.STORED
        assert store.snapshot()["binance"] == 100.5
        assert store.last_update("binance") is not None

    @pytest.mark.parametrize("bad", [0.0, -1.0, math.nan, math.inf, -math.inf])
    def test_rejects_invalid_price(self, store, bad):
        store.upsert("binance", 100.0)
        assert store.upsert("binance", bad) is UpdateResult.REJECTED
        assert store.snapshot()["binance"] == 100.0

    def test_later_update_wins(self, store):
        store.upsert("bitmart", 99.0)
        store.upsert("bitmart", 98.5)
        assert store.snapshot()["bitmart"] == 98.5

    def test_unknown_venue_absent(self, store):
        assert "okx" not in store.snapshot()
        assert store.depth("okx") is None


class TestSnapshot:
    def test_snapshot_is_read_only(self, store):
        store.upsert("binance", 100.0)
        snap = store.snapshot()
        with pytest.raises(TypeError):
            snap["binance"] = 1.0

    def test_snapshot_is_a_copy(self, store):
        store.upsert("binance", 100.0)
        snap = store.snapshot()
        store.upsert("binance", 101.0)
        assert snap["binance"] == 100.0

    def test_market_view_pairs_prices_and_depth(self, store):
        store.upsert("binance", 100.0)
        store.upsert_depth(DepthUpdate("bitmart", asks=((99.1, 5.0),), bids=((98.9, 5.0),), timestamp=10.0))
        view = store.market_view()
        assert view.price("binance") == 100.0
        assert view.depth_for("bitmart").best_ask == 99.1
        assert view.depth_for("binance") is None

    def test_try_market_view_returns_none_while_locked(self, store):
        store.upsert("binance", 100.0)
        store._lock.acquire()
        try:
            assert store.try_market_view() is None
        finally:
            store._lock.release()
        assert store.try_market_view().price("binance") == 100.0


class TestDepth:
    def test_depth_sorted_and_sanitized(self, store):
        update = DepthUpdate(
            "bitmart",
            asks=((102.0, 1.0), (101.0, 2.0), (0.0, 3.0), (103.0, math.nan)),
            bids=((98.0, 1.0), (99.0, 2.0), (-1.0, 1.0)),
            timestamp=5.0,
        )
        assert store.upsert_depth(update) is UpdateResult.STORED
        book = store.depth("bitmart")
        assert [l.price for l in book.asks] == [101.0, 102.0]
        assert [l.price for l in book.bids] == [99.0, 98.0]
        assert book.observed_at == 5.0

    def test_depth_with_no_valid_levels_rejected(self, store):
        update = DepthUpdate("bitmart", asks=((0.0, 1.0),), bids=(), timestamp=1.0)
        assert store.upsert_depth(update) is UpdateResult.REJECTED
        assert store.depth("bitmart") is None

    def test_one_sided_depth_is_kept(self, store):
        update = DepthUpdate("bitmart", asks=((101.0, 1.0),), bids=(), timestamp=1.0)
        assert store.upsert_depth(update) is UpdateResult.STORED
        assert store.depth("bitmart").bids == ()

    def test_book_age(self):
        book = DepthBook.build("x", [DepthLevel(1.0, 1.0)], [], observed_at=100.0)
        assert book.age(103.5) == pytest.approx(3.5)


class TestConcurrency:
    def test_parallel_writers_never_store_invalid(self, store):
        def writer(venue, base):
            for i in range(500):
                store.upsert(venue, base + i * 0.01)
                store.upsert(venue, -1.0)

        threads = [threading.Thread(target=writer, args=(v, b)) for v, b in (("binance", 100.0), ("bitmart", 99.0))]
        for t in threads:
            t.start()
        for _ in range(200):
            snap = store.snapshot()
            assert all(p > 0 for p in snap.values())
        for t in threads:
            t.join()
        snap = store.snapshot()
        assert snap["binance"] == pytest.approx(100.0 + 499 * 0.01)
        assert snap["bitmart"] == pytest.approx(99.0 + 499 * 0.01)
