"""Single control loop for one run: apply diffs, recover from gaps, emit records."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from lob_core.errors import DeadlineExceeded, SeedError, TransportError
from lob_core.sync_engine import Applied, BookPhase, BookStateMachine, GapDetected, Stale
from lob_core.types import Diff, Snapshot

from lob_ingest.backoff import backoff_delay
from lob_ingest.deadline import RunDeadline
from lob_ingest.emitter import RecordEmitter
from lob_ingest.metrics import IngestMetrics
from lob_ingest.ws_stream import StreamOpened


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    DEADLINE = "deadline"
    UNRESOLVED_GAP = "unresolved_gap"


class GapReason(str, Enum):
    INITIAL = "initial"
    # Gap on the first diff after a fresh (re)subscription.
    RECONNECT = "reconnect"
    # Gap mid-stream on an already-open subscription.
    STREAM_LOSS = "stream_loss"


@dataclass
class RecoverySession:
    triggered_at: float
    reason: GapReason
    missing_from: Optional[int] = None
    missing_to: Optional[int] = None
    reseed_snapshot_id: Optional[int] = None
    recovered_flag: bool = False
    attempts: int = 0
    buffered: int = 0
    dropped: int = 0
    resolved_at: Optional[float] = None

    def summary(self) -> Dict[str, Any]:
        out = asdict(self)
        out["reason"] = self.reason.value
        return out


@dataclass
class RunReport:
    outcome: RunOutcome
    phase: BookPhase
    last_update_id: Optional[int]
    records_emitted: int
    sessions: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    error: Optional[str] = None


class RecoveryOrchestrator:
    """Drives the book from a diff stream and keeps it live across gaps.

    The book is touched only from this loop, and each normalization runs
    between two applies, so no record ever observes a half-applied diff.
    While a snapshot is outstanding incoming diffs go to a bounded buffer
    (oldest dropped) and are replayed after the reseed.
    """

    def __init__(
        self,
        book: BookStateMachine,
        reader,
        fetcher,
        emitter: RecordEmitter,
        deadline: RunDeadline,
        *,
        recovery_buffer_max: int = 1000,
        retry_max: int = 0,
        retry_backoff_s: float = 0.5,
        retry_backoff_max_s: float = 5.0,
        heartbeat_s: float = 30.0,
        metrics: Optional[IngestMetrics] = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.book = book
        self.reader = reader
        self.fetcher = fetcher
        self.emitter = emitter
        self.deadline = deadline
        self.recovery_buffer_max = max(1, int(recovery_buffer_max))
        self.retry_max = max(0, int(retry_max))
        self.retry_backoff_s = float(retry_backoff_s)
        self.retry_backoff_max_s = float(retry_backoff_max_s)
        self.heartbeat_s = max(0.01, float(heartbeat_s))
        self.metrics = metrics or emitter.metrics
        self._rand = rand

        self.session: Optional[RecoverySession] = None
        self.sessions: List[RecoverySession] = []
        self.recovered_pending = False
        self._fresh_connection = False
        # Set by transport statuses, cleared when a connection opens.
        self.stream_down = False
        self._last_hb = time.monotonic()
        self._log = logging.getLogger("lob_ingest.orchestrator")

    def handle_status(self, typ: str, details: dict) -> None:
        """Status callback for the stream reader."""
        if typ == "frame_dropped":
            self.metrics.observe_frame()
            self.metrics.observe_drop()
            self._log.warning("Dropped undecodable frame %s", details)
        elif typ in ("ws_transport_error", "ws_run_exception"):
            self.stream_down = True
            self._log.warning("WS status: %s %s", typ, details)
        elif typ == "ws_ping_timeout":
            self._log.warning("WS status: %s %s", typ, details)
        else:
            self._log.info("WS status: %s %s", typ, details)

    async def run(self) -> RunReport:
        outcome = RunOutcome.COMPLETED
        error: Optional[str] = None
        self.reader.start(self.deadline)
        try:
            outcome = await self._loop()
        except DeadlineExceeded as exc:
            error = str(exc)
            if self.session is not None:
                outcome = RunOutcome.UNRESOLVED_GAP
                self._log.error("Run ended gapped and unresolved: %s", exc)
            else:
                outcome = RunOutcome.DEADLINE
        except (SeedError, TransportError) as exc:
            error = str(exc)
            outcome = RunOutcome.UNRESOLVED_GAP
            self._log.error("Recovery exhausted; run ended gapped and unresolved: %s", exc)
        finally:
            await self.reader.close()
            self.emitter.flush()

        if self.stream_down and outcome != RunOutcome.UNRESOLVED_GAP:
            # The stream never came back before the run ended.
            outcome = RunOutcome.UNRESOLVED_GAP
            error = error or "diff stream disconnected and not re-established before the run ended"
            self._log.error("Run ended with the diff stream down")

        final_phase = self.book.phase
        self.book.terminate()
        self._heartbeat(force=True)
        report = RunReport(
            outcome=outcome,
            phase=final_phase,
            last_update_id=self.book.last_update_id,
            records_emitted=self.metrics.records_emitted,
            sessions=[s.summary() for s in self.sessions]
            + ([self.session.summary()] if self.session is not None else []),
            metrics=self.metrics.observations(),
            error=error,
        )
        self._log.info(
            "Run finished outcome=%s phase=%s lastUpdateId=%s records=%d",
            report.outcome.value,
            report.phase.value,
            report.last_update_id,
            report.records_emitted,
        )
        return report

    async def _loop(self) -> RunOutcome:
        while True:
            if self.deadline.stopping():
                self._log.info("Deadline approaching; no longer accepting diffs")
                return RunOutcome.DEADLINE
            wait_s = min(self.heartbeat_s, self.deadline.available())
            event = await self.reader.next_event(timeout=wait_s)
            self._heartbeat()
            if event is None:
                if not self.reader.running:
                    if self.deadline.stopping():
                        self._log.info("Diff stream stopped at the deadline")
                        return RunOutcome.DEADLINE
                    self._log.info("Diff stream ended")
                    return RunOutcome.COMPLETED
                continue
            if isinstance(event, StreamOpened):
                await self._on_stream_opened(event)
            else:
                self.metrics.observe_frame()
                await self._on_diff(event)

    async def _on_stream_opened(self, event: StreamOpened) -> None:
        if event.connection_id > 1:
            self.metrics.reconnects += 1
            self._log.info("Stream reopened connection_id=%d", event.connection_id)
        self._fresh_connection = True
        self.stream_down = False
        if self.book.phase == BookPhase.UNINITIALIZED:
            await self._recover(GapReason.INITIAL, None)

    async def _on_diff(self, diff: Diff) -> None:
        if self.book.phase == BookPhase.UNINITIALIZED:
            await self._recover(GapReason.INITIAL, None, pending=[diff])
            return

        outcome = self.book.apply(diff)
        if isinstance(outcome, Stale):
            # Resent ids after a reconnect leave the connection fresh.
            self.metrics.diffs_stale += 1
            return
        fresh = self._fresh_connection
        self._fresh_connection = False
        if isinstance(outcome, GapDetected):
            reason = GapReason.RECONNECT if fresh else GapReason.STREAM_LOSS
            await self._recover(reason, outcome)
            return
        self._on_applied(outcome)

    def _on_applied(self, outcome: Applied) -> None:
        self.metrics.diffs_applied += 1
        diff = outcome.diff
        self.metrics.observe_lag(diff.event_ts_us, diff.ingest_ts_us)
        if self.recovered_pending and outcome.exact:
            self.recovered_pending = False
            self._log.info("Contiguous sequence resumed at lastUpdateId=%s", outcome.last_update_id)
        self._emit(event_ts_us=diff.event_ts_us, ingest_ts_us=diff.ingest_ts_us, gap_detected=False)

    def _emit(self, *, event_ts_us: int, ingest_ts_us: int, gap_detected: bool) -> None:
        view = self.book.snapshot_state(max_levels=self.emitter.max_depth)
        self.emitter.emit(
            view,
            event_ts_us=event_ts_us,
            ingest_ts_us=ingest_ts_us,
            gap_detected=gap_detected,
            recovered=self.recovered_pending,
        )

    async def _recover(
        self,
        reason: GapReason,
        gap: Optional[GapDetected],
        pending: Optional[List[Diff]] = None,
    ) -> None:
        session = RecoverySession(triggered_at=time.time(), reason=reason)
        buffer: Deque[Diff] = deque(pending or ())
        if gap is not None:
            session.missing_from = gap.missing_from
            session.missing_to = gap.missing_to
            self.metrics.gap_count += 1
            buffer.append(gap.diff)
            self._log.warning(
                "Gap detected reason=%s missing=[%d, %d] diff=[%d, %d]",
                reason.value,
                gap.missing_from,
                gap.missing_to,
                gap.diff.first_update_id,
                gap.diff.last_update_id,
            )
        if reason != GapReason.INITIAL:
            self.metrics.recoveries += 1
        self.session = session

        while True:
            await self._reseed(session, buffer)
            regap = self._replay(buffer)
            if regap is None:
                break
            # Snapshot was already behind the buffered diffs; fetch again.
            self._log.warning(
                "Snapshot %s behind buffered diff [%d, %d]; reseeding again",
                session.reseed_snapshot_id,
                regap.diff.first_update_id,
                regap.diff.last_update_id,
            )
            buffer.appendleft(regap.diff)

        session.resolved_at = time.time()
        self.sessions.append(session)
        self.session = None
        self._log.info(
            "Recovery done reason=%s lastUpdateId=%s attempts=%d buffered=%d dropped=%d",
            reason.value,
            self.book.last_update_id,
            session.attempts,
            session.buffered,
            session.dropped,
        )

    async def _reseed(self, session: RecoverySession, buffer: Deque[Diff]) -> Snapshot:
        attempt = 0
        while True:
            attempt += 1
            session.attempts += 1
            self.deadline.check()
            try:
                snapshot = await self._while_buffering(self.fetcher.fetch(), buffer, session)
                self.book.seed(snapshot)
                break
            except (TransportError, SeedError) as exc:
                self.metrics.snapshot_failures += 1
                if self.retry_max and attempt >= self.retry_max:
                    self._log.error("Snapshot failed %d times; giving up: %s", attempt, exc)
                    raise
                delay = backoff_delay(attempt, self.retry_backoff_s, self.retry_backoff_max_s, self._rand)
                if delay >= self.deadline.available():
                    raise DeadlineExceeded(
                        f"no budget left to retry snapshot after {attempt} attempts: {exc}"
                    ) from exc
                self._log.warning("Snapshot attempt %d failed (%s); retrying in %.2fs", attempt, exc, delay)
                await self._while_buffering(asyncio.sleep(delay), buffer, session)

        session.reseed_snapshot_id = snapshot.last_update_id
        is_recovery = session.reason != GapReason.INITIAL
        if is_recovery:
            session.recovered_flag = True
            self.recovered_pending = True
        self._log.info(
            "Book seeded reason=%s lastUpdateId=%s bids=%d asks=%d",
            session.reason.value,
            snapshot.last_update_id,
            len(snapshot.bids),
            len(snapshot.asks),
        )
        self._emit(
            event_ts_us=snapshot.fetched_at_us,
            ingest_ts_us=snapshot.fetched_at_us,
            gap_detected=is_recovery,
        )
        return snapshot

    def _replay(self, buffer: Deque[Diff]) -> Optional[GapDetected]:
        """Replay buffered diffs in receive order; stale ones are discarded by apply."""
        while buffer:
            diff = buffer.popleft()
            outcome = self.book.apply(diff)
            if isinstance(outcome, Stale):
                self.metrics.diffs_stale += 1
                continue
            if isinstance(outcome, GapDetected):
                return outcome
            self._fresh_connection = False
            self._on_applied(outcome)
        return None

    def _buffer_event(self, event, buffer: Deque[Diff], session: RecoverySession) -> None:
        if isinstance(event, StreamOpened):
            if event.connection_id > 1:
                self.metrics.reconnects += 1
            self._fresh_connection = True
            self.stream_down = False
            return
        self.metrics.observe_frame()
        if len(buffer) >= self.recovery_buffer_max:
            buffer.popleft()
            self.metrics.observe_drop()
            session.dropped += 1
        buffer.append(event)
        session.buffered += 1

    async def _while_buffering(self, aw, buffer: Deque[Diff], session: RecoverySession):
        """Await `aw` while moving incoming stream events into the recovery buffer."""
        task = asyncio.ensure_future(aw)
        try:
            while not task.done():
                available = self.deadline.available()
                if available <= 0:
                    raise DeadlineExceeded("run budget used while recovering")
                getter = asyncio.ensure_future(self.reader.next_event(timeout=available))
                done, _ = await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    event = getter.result()
                    if event is not None:
                        self._buffer_event(event, buffer, session)
                else:
                    getter.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await getter
            return task.result()
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    def _heartbeat(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_hb < self.heartbeat_s:
            return
        self._last_hb = now
        obs = self.metrics.observations()
        self._log.info(
            "HEARTBEAT phase=%s lastUpdateId=%s remaining=%.1fs ingest_lag_ms=%.1f drop_rate_ppm=%.1f "
            "reconnects=%d gap_count=%d levels_filled=%d records=%d",
            self.book.phase.value,
            self.book.last_update_id,
            self.deadline.remaining(),
            obs["ingest_lag_ms"],
            obs["drop_rate_ppm"],
            self.metrics.reconnects,
            self.metrics.gap_count,
            self.metrics.levels_filled,
            self.metrics.records_emitted,
        )
