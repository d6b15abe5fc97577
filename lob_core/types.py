from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class PriceLevel:
    """One L2 level: price in integer ticks, quantity in integer lots."""

    price: int
    quantity: int

    def __post_init__(self) -> None:
        if isinstance(self.price, bool) or not isinstance(self.price, int):
            raise ValueError(f"price must be integer ticks (got {self.price!r})")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"quantity must be integer lots (got {self.quantity!r})")
        if self.price <= 0:
            raise ValueError(f"price must be positive (got {self.price})")
        if self.quantity < 0:
            raise ValueError(f"quantity must be non-negative (got {self.quantity})")


@dataclass(frozen=True)
class Diff:
    first_update_id: int
    last_update_id: int
    bid_changes: Tuple[PriceLevel, ...] = ()
    ask_changes: Tuple[PriceLevel, ...] = ()
    event_ts_us: int = 0
    # Captured when the frame was read off the socket, not when emitted.
    ingest_ts_us: int = 0

    def __post_init__(self) -> None:
        if int(self.first_update_id) > int(self.last_update_id):
            raise ValueError(
                f"first_update_id {self.first_update_id} > last_update_id {self.last_update_id}"
            )
        object.__setattr__(self, "bid_changes", tuple(self.bid_changes))
        object.__setattr__(self, "ask_changes", tuple(self.ask_changes))


@dataclass(frozen=True)
class Snapshot:
    last_update_id: int
    bids: Tuple[PriceLevel, ...]
    asks: Tuple[PriceLevel, ...]
    fetched_at_us: int = 0
    raw: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "bids", tuple(self.bids))
        object.__setattr__(self, "asks", tuple(self.asks))


@dataclass(frozen=True)
class TickScale:
    """Converts venue decimal strings to integer ticks/lots and back."""

    tick_size: Decimal
    lot_size: Decimal

    def __post_init__(self) -> None:
        tick = _to_decimal(self.tick_size)
        lot = _to_decimal(self.lot_size)
        if tick <= 0:
            raise ValueError(f"tick_size must be positive (got {self.tick_size!r})")
        if lot <= 0:
            raise ValueError(f"lot_size must be positive (got {self.lot_size!r})")
        object.__setattr__(self, "tick_size", tick)
        object.__setattr__(self, "lot_size", lot)

    @staticmethod
    def _scale(value, unit: Decimal, label: str) -> int:
        d = _to_decimal(value)
        steps = d / unit
        steps_int = steps.to_integral_value()
        if steps != steps_int:
            raise ValueError(f"{label} {value!r} does not align to {unit}")
        return int(steps_int)

    def price_to_ticks(self, price) -> int:
        return self._scale(price, self.tick_size, "price")

    def qty_to_lots(self, qty) -> int:
        return self._scale(qty, self.lot_size, "quantity")

    def ticks_to_price(self, ticks: int) -> Decimal:
        return _to_decimal(ticks) * self.tick_size

    def lots_to_qty(self, lots: int) -> Decimal:
        return _to_decimal(lots) * self.lot_size

    def level(self, price, qty) -> PriceLevel:
        return PriceLevel(self.price_to_ticks(price), self.qty_to_lots(qty))

    def levels(self, pairs: Iterable) -> Tuple[PriceLevel, ...]:
        out = []
        for pair in pairs:
            price, qty = pair[0], pair[1]
            out.append(self.level(price, qty))
        return tuple(out)
