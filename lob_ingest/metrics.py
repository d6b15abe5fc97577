from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass
class IngestMetrics:
    frames_received: int = 0
    frames_dropped: int = 0
    diffs_applied: int = 0
    diffs_stale: int = 0
    records_emitted: int = 0
    emit_failures: int = 0
    empty_book_skips: int = 0
    reconnects: int = 0
    gap_count: int = 0
    recoveries: int = 0
    snapshot_failures: int = 0
    levels_filled: int = 0
    ingest_lag_ms: float = 0.0

    def observe_frame(self) -> None:
        self.frames_received += 1

    def observe_drop(self, n: int = 1) -> None:
        self.frames_dropped += n

    def observe_lag(self, event_ts_us: int, ingest_ts_us: int) -> None:
        if event_ts_us > 0 and ingest_ts_us > 0:
            self.ingest_lag_ms = (ingest_ts_us - event_ts_us) / 1000.0

    @property
    def drop_rate_ppm(self) -> float:
        if self.frames_received <= 0:
            return 0.0
        return self.frames_dropped * 1_000_000.0 / self.frames_received

    def observations(self) -> Dict[str, float]:
        return {
            "ingest_lag_ms": float(self.ingest_lag_ms),
            "drop_rate_ppm": float(self.drop_rate_ppm),
            "reconnects": float(self.reconnects),
            "gap_count": float(self.gap_count),
            "levels_filled": float(self.levels_filled),
            "frames_received": float(self.frames_received),
            "diffs_applied": float(self.diffs_applied),
            "diffs_stale": float(self.diffs_stale),
            "records_emitted": float(self.records_emitted),
            "recoveries": float(self.recoveries),
        }
