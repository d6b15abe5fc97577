"""Fixed-depth views and book metrics derived from one consistent book read."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Sequence, Tuple

from .errors import EmptyBookError
from .local_orderbook import BookView
from .types import PriceLevel, TickScale

DEFAULT_DEPTHS: Tuple[int, ...] = (10, 20, 50)
DEFAULT_BAND_BPS: Tuple[float, ...] = (1.0, 5.0, 10.0, 50.0, 100.0)

_BPS = Decimal(10_000)


@dataclass(frozen=True)
class NormalizedLevel:
    side: str  # "bid" | "ask"
    price: Decimal
    quantity: Decimal


@dataclass(frozen=True)
class NormalizedView:
    depth: int
    last_update_id: int
    mid_price: Decimal
    spread: Decimal
    spread_bps: float
    imbalance: float
    levels: Tuple[NormalizedLevel, ...]
    band_bps: Tuple[float, ...] = ()
    bid_band_qty: Tuple[float, ...] = ()
    ask_band_qty: Tuple[float, ...] = ()

    @property
    def bids(self) -> Tuple[NormalizedLevel, ...]:
        return tuple(lvl for lvl in self.levels if lvl.side == "bid")

    @property
    def asks(self) -> Tuple[NormalizedLevel, ...]:
        return tuple(lvl for lvl in self.levels if lvl.side == "ask")


def compute_imbalance(bid_lots: int, ask_lots: int) -> float:
    denom = bid_lots + ask_lots
    if denom == 0:
        return 0.0
    value = (bid_lots - ask_lots) / denom
    return max(-1.0, min(1.0, value))


def _band_quantities(
    levels: Sequence[PriceLevel],
    scale: TickScale,
    mid: Decimal,
    band_bps: Sequence[float],
    is_ask: bool,
) -> Tuple[float, ...]:
    out: List[float] = []
    for bps in band_bps:
        offset = mid * Decimal(str(bps)) / _BPS
        target = mid + offset if is_ask else mid - offset
        lots = 0
        for lvl in levels:
            price = scale.ticks_to_price(lvl.price)
            if (is_ask and price <= target) or (not is_ask and price >= target):
                lots += lvl.quantity
        out.append(float(scale.lots_to_qty(lots)))
    return tuple(out)


def _normalize_truncated(
    bids: Sequence[PriceLevel],
    asks: Sequence[PriceLevel],
    depth: int,
    last_update_id: int,
    scale: TickScale,
    band_bps: Sequence[float],
) -> NormalizedView:
    best_bid = scale.ticks_to_price(bids[0].price)
    best_ask = scale.ticks_to_price(asks[0].price)
    mid = (best_bid + best_ask) / 2
    spread = best_ask - best_bid
    spread_bps = float(spread / mid * _BPS)
    imbalance = compute_imbalance(
        sum(lvl.quantity for lvl in bids),
        sum(lvl.quantity for lvl in asks),
    )
    levels = tuple(
        NormalizedLevel("bid", scale.ticks_to_price(lvl.price), scale.lots_to_qty(lvl.quantity))
        for lvl in bids
    ) + tuple(
        NormalizedLevel("ask", scale.ticks_to_price(lvl.price), scale.lots_to_qty(lvl.quantity))
        for lvl in asks
    )
    bands = tuple(float(b) for b in band_bps)
    return NormalizedView(
        depth=depth,
        last_update_id=last_update_id,
        mid_price=mid,
        spread=spread,
        spread_bps=spread_bps,
        imbalance=imbalance,
        levels=levels,
        band_bps=bands,
        bid_band_qty=_band_quantities(bids, scale, mid, bands, is_ask=False),
        ask_band_qty=_band_quantities(asks, scale, mid, bands, is_ask=True),
    )


def normalize_depths(
    view: BookView,
    depths: Iterable[int],
    scale: TickScale,
    band_bps: Sequence[float] = DEFAULT_BAND_BPS,
) -> Dict[int, NormalizedView]:
    """Normalize one book read at several depths.

    Every depth slices the same `view`, so the results describe the same book
    state and the top-D1 levels of a D2 result equal the D1 result.
    """
    requested = list(depths)
    wanted = sorted({int(d) for d in requested})
    if not wanted or wanted[0] <= 0:
        raise ValueError(f"depths must be positive ints (got {requested!r})")
    if not view.bids or not view.asks:
        raise EmptyBookError(
            f"book at {view.last_update_id} has {len(view.bids)} bids / {len(view.asks)} asks"
        )
    out: Dict[int, NormalizedView] = {}
    for depth in wanted:
        out[depth] = _normalize_truncated(
            view.bids[:depth],
            view.asks[:depth],
            depth,
            view.last_update_id,
            scale,
            band_bps,
        )
    return out


def normalize(
    view: BookView,
    depth: int,
    scale: TickScale,
    band_bps: Sequence[float] = DEFAULT_BAND_BPS,
) -> NormalizedView:
    return normalize_depths(view, [depth], scale, band_bps)[int(depth)]
