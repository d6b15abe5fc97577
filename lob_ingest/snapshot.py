import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Optional

import requests

from lob_core.errors import TransportError
from lob_core.types import Snapshot, TickScale

from lob_ingest.exchanges.base import VenueAdapter


class RestSnapshotClient:
    """Blocking REST client for the venue's full-depth endpoint."""

    def __init__(self, adapter: VenueAdapter, timeout_s: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.adapter = adapter
        self.timeout_s = float(timeout_s)
        self.session = session or requests.Session()

    def get_order_book(self, symbol: str, limit: int) -> dict:
        url, params = self.adapter.snapshot_request(symbol, limit)
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout_s)
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as exc:
            raise TransportError(f"snapshot request failed: {exc}") from exc
        except ValueError as exc:
            raise TransportError(f"snapshot response is not JSON: {exc}") from exc

    def close(self) -> None:
        self.session.close()


class SnapshotFetcher:
    """Fetches one full-book Snapshot per call; retries belong to the caller.

    Raises TransportError when the request fails and SeedError when the
    payload is malformed.
    """

    def __init__(
        self,
        client,
        adapter: VenueAdapter,
        symbol: str,
        scale: TickScale,
        limit: int = 1000,
        audit_dir: Optional[Path] = None,
    ) -> None:
        self.client = client
        self.adapter = adapter
        self.symbol = adapter.normalize_symbol(symbol)
        self.scale = scale
        self.limit = int(limit)
        self.audit_dir = audit_dir
        self.fetch_count = 0
        self._log = logging.getLogger("lob_ingest.snapshot")

    async def fetch(self) -> Snapshot:
        self.fetch_count += 1
        payload = await asyncio.to_thread(self.client.get_order_book, self.symbol, self.limit)
        fetched_at_us = int(time.time() * 1_000_000)
        snapshot = self.adapter.parse_snapshot(payload, self.scale, fetched_at_us)
        self._log.info(
            "Snapshot fetched lastUpdateId=%s bids=%d asks=%d",
            snapshot.last_update_id,
            len(snapshot.bids),
            len(snapshot.asks),
        )
        if self.audit_dir is not None:
            write_snapshot_json(
                path=self.audit_dir / f"snapshot_{self.fetch_count:04d}_{snapshot.last_update_id}.json",
                payload=payload,
            )
        return snapshot


def write_snapshot_json(*, path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, default=str))
