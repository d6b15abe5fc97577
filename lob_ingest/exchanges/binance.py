from __future__ import annotations

import os
from typing import Any, Dict, Optional, Tuple

from lob_core.errors import SeedError
from lob_core.types import Diff, Snapshot, TickScale

from .base import VenueAdapter

BINANCE_WS_BASE_URL = os.getenv("BINANCE_WS_BASE_URL", "wss://stream.binance.com:9443")
BINANCE_REST_BASE_URL = os.getenv("BINANCE_REST_BASE_URL", "https://api.binance.com")


def _validate_snapshot_payload(snap: Any) -> tuple[list, list, int]:
    if not isinstance(snap, dict):
        raise ValueError("snapshot payload must be a dict")
    if "bids" not in snap or "asks" not in snap or "lastUpdateId" not in snap:
        raise ValueError("snapshot payload missing required keys")
    bids = snap.get("bids")
    asks = snap.get("asks")
    if not isinstance(bids, list) or not isinstance(asks, list):
        raise ValueError("snapshot bids/asks must be lists")
    try:
        last_update_id = int(snap.get("lastUpdateId"))
    except Exception as exc:
        raise ValueError("snapshot lastUpdateId must be int-like") from exc
    return bids, asks, last_update_id


class BinanceAdapter(VenueAdapter):
    name = "binance"

    def __init__(self, ws_base_url: str | None = None, rest_base_url: str | None = None) -> None:
        self.ws_base_url = ws_base_url or BINANCE_WS_BASE_URL
        self.rest_base_url = rest_base_url or BINANCE_REST_BASE_URL

    def normalize_symbol(self, symbol: str) -> str:
        return symbol.upper().strip()

    def ws_url(self, symbol: str) -> str:
        sym = self.normalize_symbol(symbol).lower()
        return f"{self.ws_base_url}/stream?streams={sym}@depth@100ms"

    def snapshot_request(self, symbol: str, limit: int) -> Tuple[str, Dict[str, Any]]:
        url = f"{self.rest_base_url}/api/v3/depth"
        return url, {"symbol": self.normalize_symbol(symbol), "limit": int(limit)}

    def unwrap_depth(self, payload: Any) -> Optional[dict]:
        if not isinstance(payload, dict):
            return None
        stream = payload.get("stream", "")
        data = payload.get("data", payload)
        if not isinstance(data, dict):
            return None
        if "@depth" in stream or data.get("e") == "depthUpdate":
            return data
        return None

    def parse_depth(self, data: dict, scale: TickScale, ingest_ts_us: int) -> Diff:
        return Diff(
            first_update_id=int(data["U"]),
            last_update_id=int(data["u"]),
            bid_changes=scale.levels(data.get("b", [])),
            ask_changes=scale.levels(data.get("a", [])),
            event_ts_us=int(data.get("E", 0)) * 1000,
            ingest_ts_us=int(ingest_ts_us),
        )

    def parse_snapshot(self, payload: Any, scale: TickScale, fetched_at_us: int) -> Snapshot:
        try:
            bids, asks, last_update_id = _validate_snapshot_payload(payload)
            bid_levels = scale.levels(bids)
            ask_levels = scale.levels(asks)
        except (ValueError, TypeError, IndexError) as exc:
            raise SeedError(f"Invalid snapshot payload: {exc}") from exc
        # Zero-quantity levels are never stored.
        return Snapshot(
            last_update_id=last_update_id,
            bids=tuple(lvl for lvl in bid_levels if lvl.quantity > 0),
            asks=tuple(lvl for lvl in ask_levels if lvl.quantity > 0),
            fetched_at_us=int(fetched_at_us),
            raw=payload,
        )
