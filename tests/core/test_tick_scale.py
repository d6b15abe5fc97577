from __future__ import annotations

from decimal import Decimal

import pytest

from lob_core.types import Diff, PriceLevel, TickScale


def test_tick_scale_round_trips_aligned_values():
    scale = TickScale("0.01", "0.00001")
    lvl = scale.level("65000.12", "0.00150")
    assert lvl == PriceLevel(6500012, 150)
    assert scale.ticks_to_price(lvl.price) == Decimal("65000.12")
    assert scale.lots_to_qty(lvl.quantity) == Decimal("0.00150")


def test_tick_scale_rejects_misaligned_price():
    scale = TickScale("0.01", "1")
    with pytest.raises(ValueError):
        scale.price_to_ticks("100.005")
    with pytest.raises(ValueError):
        TickScale("0", "1")


@pytest.mark.parametrize("price,qty", [(0, 1), (-1, 1), (1, -1), (1.5, 1), (True, 1)])
def test_price_level_validation(price, qty):
    with pytest.raises(ValueError):
        PriceLevel(price, qty)


def test_diff_rejects_inverted_range():
    with pytest.raises(ValueError):
        Diff(first_update_id=10, last_update_id=9)
