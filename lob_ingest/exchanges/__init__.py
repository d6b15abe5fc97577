from __future__ import annotations

from .base import VenueAdapter
from .binance import BinanceAdapter


_ADAPTERS = {
    "binance": BinanceAdapter,
}


def get_adapter(name: str) -> VenueAdapter:
    key = (name or "binance").strip().lower()
    if key not in _ADAPTERS:
        raise RuntimeError(f"Unknown venue {name!r}. Available: {', '.join(sorted(_ADAPTERS))}")
    return _ADAPTERS[key]()


__all__ = ["BinanceAdapter", "VenueAdapter", "get_adapter"]
