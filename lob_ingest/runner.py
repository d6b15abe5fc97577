from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from lob_core.sync_engine import BookStateMachine
from lob_core.types import TickScale

from lob_ingest.deadline import RunDeadline
from lob_ingest.emitter import AvroFileSink, RecordEmitter, StorageSink
from lob_ingest.exchanges import get_adapter
from lob_ingest.logging_config import setup_run_logging
from lob_ingest.metrics import IngestMetrics
from lob_ingest.orchestrator import RecoveryOrchestrator, RunReport
from lob_ingest.settings import IngestSettings
from lob_ingest.snapshot import RestSnapshotClient, SnapshotFetcher
from lob_ingest.ws_stream import DiffStreamReader

log = logging.getLogger("lob_ingest.runner")


def build_orchestrator(
    settings: IngestSettings,
    *,
    run_id: str,
    sink: Optional[StorageSink] = None,
    reader=None,
    fetcher=None,
    deadline: Optional[RunDeadline] = None,
) -> RecoveryOrchestrator:
    """Wire one run from settings. Collaborators may be injected for tests."""
    adapter = get_adapter(settings.venue)
    symbol = adapter.normalize_symbol(settings.symbol)
    scale = TickScale(settings.tick_size, settings.lot_size)
    metrics = IngestMetrics()

    if sink is None:
        day = datetime.now(timezone.utc).strftime("%Y%m%d")
        out_dir = Path(settings.output_dir) / settings.venue / symbol / day
        sink = AvroFileSink(out_dir / f"orderbook_{symbol}_{run_id}.avro")
    emitter = RecordEmitter(
        venue=settings.venue,
        symbol=symbol,
        scale=scale,
        sink=sink,
        depths=settings.depths,
        band_bps=settings.band_bps,
        metrics=metrics,
    )
    if fetcher is None:
        fetcher = SnapshotFetcher(
            RestSnapshotClient(adapter, timeout_s=settings.snapshot_timeout_s),
            adapter,
            symbol,
            scale,
            limit=settings.snapshot_limit,
        )
    own_reader = reader is None
    if own_reader:
        reader = DiffStreamReader(
            ws_url=adapter.ws_url(symbol),
            adapter=adapter,
            scale=scale,
            insecure_tls=settings.insecure_tls,
            ping_interval_s=settings.ws_ping_interval_s,
            ping_timeout_s=settings.ws_ping_timeout_s,
            reconnect_backoff_s=settings.ws_reconnect_backoff_s,
            reconnect_backoff_max_s=settings.ws_reconnect_backoff_max_s,
            max_session_s=settings.ws_max_session_s,
            recv_poll_timeout_s=settings.ws_recv_poll_s,
            max_queue=settings.ws_max_queue,
        )
    if deadline is None:
        deadline = RunDeadline(settings.run_budget_s, grace_s=settings.shutdown_grace_s)

    orchestrator = RecoveryOrchestrator(
        BookStateMachine(),
        reader,
        fetcher,
        emitter,
        deadline,
        recovery_buffer_max=settings.recovery_buffer_max,
        retry_max=settings.snapshot_retry_max,
        retry_backoff_s=settings.snapshot_retry_backoff_s,
        retry_backoff_max_s=settings.snapshot_retry_backoff_max_s,
        heartbeat_s=settings.heartbeat_s,
        metrics=metrics,
    )
    if own_reader:
        reader.on_status_cb = orchestrator.handle_status
    return orchestrator


def run_once(settings: IngestSettings, *, run_id: Optional[str] = None, **overrides) -> RunReport:
    run_id = run_id or str(int(time.time() * 1000))
    orchestrator = build_orchestrator(settings, run_id=run_id, **overrides)
    try:
        return asyncio.run(orchestrator.run())
    finally:
        orchestrator.emitter.close()


def main() -> None:
    settings = IngestSettings.from_env()
    if not settings.symbol:
        raise SystemExit("SYMBOL environment variable is required (e.g. SYMBOL=BTCUSDT).")

    run_id = str(int(time.time() * 1000))
    log_path = setup_run_logging(
        level=settings.log_level,
        venue=settings.venue,
        symbol=settings.symbol.upper(),
        yyyymmdd=datetime.now(timezone.utc).strftime("%Y%m%d"),
        run_id=run_id,
        base_dir=settings.log_dir,
    )
    log.info("Run logging to %s", log_path)
    log.info(
        "Run config venue=%s symbol=%s depths=%s budget_s=%.0f grace_s=%.1f tick=%s lot=%s",
        settings.venue,
        settings.symbol,
        ",".join(str(d) for d in settings.depths),
        settings.run_budget_s,
        settings.shutdown_grace_s,
        settings.tick_size,
        settings.lot_size,
    )
    # Surface crashes in the run log; stderr may be discarded by the host.
    try:
        report = run_once(settings, run_id=run_id)
    except Exception:
        log.exception("Run crashed")
        raise
    log.info("Run report %s", report)
    if report.outcome.value == "unresolved_gap":
        raise SystemExit(2)


if __name__ == "__main__":
    main()
