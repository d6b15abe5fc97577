from __future__ import annotations

from lob_core.local_orderbook import BookSide, BookView, OrderBookState
from lob_core.types import PriceLevel


def test_book_side_iterates_best_first():
    bids = BookSide(descending=True, levels=[PriceLevel(100, 2), PriceLevel(101, 1)])
    asks = BookSide(descending=False, levels=[PriceLevel(103, 1), PriceLevel(102, 1)])

    assert bids.best() == PriceLevel(101, 1)
    assert asks.best() == PriceLevel(102, 1)
    assert [p for p, _ in bids.items()] == [101, 100]
    assert [p for p, _ in asks.items()] == [102, 103]


def test_zero_quantity_removes_level_and_is_never_stored():
    bids = BookSide(descending=True, levels=[PriceLevel(100, 2), PriceLevel(99, 0)])
    assert 99 not in bids
    assert len(bids) == 1

    bids.set(100, 0)
    assert len(bids) == 0
    assert bids.best() is None

    # Removing an absent level is a no-op.
    bids.set(42, 0)
    assert len(bids) == 0


def test_top_n_truncates_and_view_is_a_copy():
    state = OrderBookState(
        bids=BookSide(descending=True, levels=[PriceLevel(p, 1) for p in range(90, 100)]),
        asks=BookSide(descending=False, levels=[PriceLevel(p, 1) for p in range(101, 111)]),
        last_update_id=7,
        consistent=True,
    )
    view = BookView.of(state, max_levels=3)
    assert [lvl.price for lvl in view.bids] == [99, 98, 97]
    assert [lvl.price for lvl in view.asks] == [101, 102, 103]
    assert view.best_bid.price == 99
    assert view.last_update_id == 7

    state.bids.set(99, 0)
    assert view.bids[0].price == 99
