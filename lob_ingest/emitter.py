"""Record assembly and hand-off to the storage collaborator."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from fastavro.write import Writer

from lob_core.errors import EmptyBookError
from lob_core.local_orderbook import BookView
from lob_core.normalizer import DEFAULT_BAND_BPS, NormalizedView, normalize_depths
from lob_core.schema import OutputRecord, encode_record, parsed_schema, write_schema
from lob_core.types import TickScale

from lob_ingest.metrics import IngestMetrics


class StorageSink(Protocol):
    """Accepts one completed record at a time. Idempotency is the sink's job."""

    def write(self, record: OutputRecord, payload: bytes) -> None: ...

    def flush(self) -> None: ...

    def close(self) -> None: ...


class MemorySink:
    def __init__(self) -> None:
        self.records: List[OutputRecord] = []
        self.payloads: List[bytes] = []
        self.flushes = 0
        self.closed = False

    def write(self, record: OutputRecord, payload: bytes) -> None:
        self.records.append(record)
        self.payloads.append(payload)

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.closed = True


class AvroFileSink:
    """Appends records to one Avro object container file per run."""

    def __init__(self, path: Path, codec: str = "deflate") -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        write_schema(
            self.path.parent / "schema.json",
            {"orderbook_avro": {"path": self.path.name, "format": "avro", "codec": codec}},
        )
        self._fh = self.path.open("wb")
        self._writer = Writer(self._fh, parsed_schema(), codec=codec)
        self.rows_written = 0

    def write(self, record: OutputRecord, payload: bytes) -> None:
        self._writer.write(record.to_avro())
        self.rows_written += 1

    def flush(self) -> None:
        if not self._fh.closed:
            self._writer.flush()

    def close(self) -> None:
        if self._fh.closed:
            return
        self._writer.flush()
        self._fh.close()


def build_record(
    view: NormalizedView,
    *,
    venue: str,
    symbol: str,
    event_ts_us: int,
    ingest_ts_us: int,
    gap_detected: bool,
    recovered: bool,
) -> OutputRecord:
    return OutputRecord(
        venue=venue,
        symbol=symbol,
        event_ts=int(event_ts_us),
        ingest_ts=int(ingest_ts_us),
        last_update_id=view.last_update_id,
        depth=view.depth,
        levels=tuple((lvl.side, float(lvl.price), float(lvl.quantity)) for lvl in view.levels),
        mid=float(view.mid_price),
        spread_bps=view.spread_bps,
        imbalance=view.imbalance,
        gap_detected=gap_detected,
        recovered=recovered,
        spread=float(view.spread),
        band_bps=view.band_bps,
        bid_band_qty=view.bid_band_qty,
        ask_band_qty=view.ask_band_qty,
    )


class RecordEmitter:
    """Normalizes one book read at every configured depth and emits a record per depth.

    Storage failures are logged and counted, never retried here.
    """

    def __init__(
        self,
        venue: str,
        symbol: str,
        scale: TickScale,
        sink: StorageSink,
        depths: Iterable[int] = (10, 20, 50),
        band_bps: Sequence[float] = DEFAULT_BAND_BPS,
        metrics: Optional[IngestMetrics] = None,
    ) -> None:
        self.venue = venue
        self.symbol = symbol
        self.scale = scale
        self.sink = sink
        self.depths: Tuple[int, ...] = tuple(sorted({int(d) for d in depths}))
        if not self.depths or self.depths[0] <= 0:
            raise ValueError(f"depths must be positive ints (got {depths!r})")
        self.band_bps = tuple(band_bps)
        self.metrics = metrics or IngestMetrics()
        self._log = logging.getLogger("lob_ingest.emitter")

    @property
    def max_depth(self) -> int:
        return self.depths[-1]

    def emit(
        self,
        view: BookView,
        *,
        event_ts_us: int,
        ingest_ts_us: int,
        gap_detected: bool = False,
        recovered: bool = False,
    ) -> List[OutputRecord]:
        try:
            views = normalize_depths(view, self.depths, self.scale, self.band_bps)
        except EmptyBookError as exc:
            self.metrics.empty_book_skips += 1
            self._log.warning("Normalization skipped at lastUpdateId=%s: %s", view.last_update_id, exc)
            return []

        deepest = views[self.max_depth]
        self.metrics.levels_filled = len(deepest.levels)

        records: List[OutputRecord] = []
        for depth in self.depths:
            record = build_record(
                views[depth],
                venue=self.venue,
                symbol=self.symbol,
                event_ts_us=event_ts_us,
                ingest_ts_us=ingest_ts_us,
                gap_detected=gap_detected,
                recovered=recovered,
            )
            try:
                self.sink.write(record, encode_record(record.to_avro()))
            except Exception:
                self.metrics.emit_failures += 1
                self._log.exception(
                    "Storage write failed depth=%s lastUpdateId=%s", depth, record.last_update_id
                )
                continue
            records.append(record)
        self.metrics.records_emitted += len(records)
        return records

    def flush(self) -> None:
        try:
            self.sink.flush()
        except Exception:
            self._log.exception("Storage flush failed")

    def close(self) -> None:
        try:
            self.sink.close()
        except Exception:
            self._log.exception("Storage close failed")
