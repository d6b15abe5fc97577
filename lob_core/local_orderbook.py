from __future__ import annotations

from dataclasses import dataclass, field
from itertools import islice
from typing import Iterable, Iterator, Optional, Tuple

from sortedcontainers import SortedDict

from .types import PriceLevel


class BookSide:
    """Price-ordered levels for one side, keyed by integer ticks.

    Bids iterate descending, asks ascending. A zero quantity removes the key,
    so a stored level is never zero.
    """

    def __init__(self, descending: bool, levels: Iterable[PriceLevel] = ()) -> None:
        self.descending = descending
        self._levels: SortedDict = SortedDict()
        for lvl in levels:
            self.set(lvl.price, lvl.quantity)

    def set(self, price: int, quantity: int) -> None:
        if quantity < 0:
            raise ValueError(f"negative quantity {quantity} at price {price}")
        if quantity == 0:
            self._levels.pop(price, None)
        else:
            self._levels[price] = quantity

    def __len__(self) -> int:
        return len(self._levels)

    def __contains__(self, price: int) -> bool:
        return price in self._levels

    def items(self) -> Iterator[Tuple[int, int]]:
        """Yield (ticks, lots) best price first."""
        if self.descending:
            return reversed(self._levels.items())
        return iter(self._levels.items())

    def best(self) -> Optional[PriceLevel]:
        if not self._levels:
            return None
        price, qty = self._levels.peekitem(-1 if self.descending else 0)
        return PriceLevel(price, qty)

    def top_n(self, n: int) -> Tuple[PriceLevel, ...]:
        if n <= 0:
            return ()
        return tuple(PriceLevel(p, q) for p, q in islice(self.items(), n))

    def freeze(self) -> Tuple[PriceLevel, ...]:
        return tuple(PriceLevel(p, q) for p, q in self.items())


@dataclass
class OrderBookState:
    """Canonical book for one run. Mutated only by the state machine."""

    bids: BookSide = field(default_factory=lambda: BookSide(descending=True))
    asks: BookSide = field(default_factory=lambda: BookSide(descending=False))
    last_update_id: Optional[int] = None
    consistent: bool = False
    last_applied_at: Optional[float] = None


@dataclass(frozen=True)
class BookView:
    """Immutable point-in-time read of an OrderBookState."""

    bids: Tuple[PriceLevel, ...]
    asks: Tuple[PriceLevel, ...]
    last_update_id: int

    @property
    def best_bid(self) -> Optional[PriceLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[PriceLevel]:
        return self.asks[0] if self.asks else None

    @classmethod
    def of(cls, state: OrderBookState, max_levels: Optional[int] = None) -> "BookView":
        if max_levels is None:
            bids, asks = state.bids.freeze(), state.asks.freeze()
        else:
            bids, asks = state.bids.top_n(max_levels), state.asks.top_n(max_levels)
        return cls(bids=bids, asks=asks, last_update_id=int(state.last_update_id or 0))
