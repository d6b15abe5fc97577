from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from lob_core.types import Diff, Snapshot, TickScale


class VenueAdapter(ABC):
    name: str

    @abstractmethod
    def normalize_symbol(self, symbol: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def ws_url(self, symbol: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def snapshot_request(self, symbol: str, limit: int) -> Tuple[str, Dict[str, Any]]:
        """Return (url, query params) for a full-book REST snapshot."""
        raise NotImplementedError

    def unwrap_depth(self, payload: Any) -> Optional[dict]:
        """Return the depth-update body of a WS message, or None for other messages."""
        return None

    @abstractmethod
    def parse_depth(self, data: dict, scale: TickScale, ingest_ts_us: int) -> Diff:
        raise NotImplementedError

    @abstractmethod
    def parse_snapshot(self, payload: Any, scale: TickScale, fetched_at_us: int) -> Snapshot:
        raise NotImplementedError
