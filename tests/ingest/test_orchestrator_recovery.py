from __future__ import annotations

import asyncio

from lob_core.errors import TransportError
from lob_core.sync_engine import BookPhase, BookStateMachine
from lob_ingest.deadline import RunDeadline
from lob_ingest.emitter import MemorySink, RecordEmitter
from lob_ingest.orchestrator import RecoveryOrchestrator, RunOutcome
from lob_ingest.ws_stream import StreamOpened

from tests._builders import SCALE, FakeFetcher, FakeReader, diff, snap


def _run(events, snapshots, *, deadline=None, drain_on=(), **kwargs):
    reader = FakeReader(events)
    fetcher = FakeFetcher(snapshots, reader=reader, drain_on=drain_on)
    sink = MemorySink()
    emitter = RecordEmitter(venue="binance", symbol="BTCUSDT", scale=SCALE, sink=sink)
    kwargs.setdefault("retry_backoff_s", 0.0)
    orchestrator = RecoveryOrchestrator(
        BookStateMachine(),
        reader,
        fetcher,
        emitter,
        deadline or RunDeadline(60.0),
        **kwargs,
    )
    report = asyncio.run(orchestrator.run())
    return report, sink, orchestrator, reader, fetcher


def test_initial_seed_then_contiguous_diffs():
    report, sink, _, reader, fetcher = _run(
        [StreamOpened(1, 1), diff(501, 503, bids=[("99.99", "1")]), diff(490, 495)],
        [snap(500)],
    )

    assert report.outcome == RunOutcome.COMPLETED
    assert report.phase == BookPhase.CONSISTENT
    assert report.last_update_id == 503
    assert fetcher.calls == 1
    assert reader.started and reader.closed
    assert sink.flushes >= 1
    assert len(sink.records) == 6
    assert [r.last_update_id for r in sink.records] == [500] * 3 + [503] * 3
    assert not any(r.gap_detected or r.recovered for r in sink.records)
    assert report.metrics["diffs_stale"] == 1.0
    assert report.sessions[0]["reason"] == "initial"


def test_gap_reseeds_and_flags_recovered_records():
    report, sink, _, _, fetcher = _run(
        [
            StreamOpened(1, 1),
            diff(501, 503),
            diff(510, 515),
            diff(516, 518, asks=[("100.03", "1")]),
        ],
        [snap(500), snap(515)],
    )

    assert report.outcome == RunOutcome.COMPLETED
    assert report.last_update_id == 518
    assert fetcher.calls == 2

    reseed = sink.records[6:9]
    assert [r.depth for r in reseed] == [10, 20, 50]
    assert all(r.gap_detected and r.recovered for r in reseed)
    assert {r.last_update_id for r in reseed} == {515}

    resumed = sink.records[9:]
    assert len(resumed) == 3
    assert not any(r.gap_detected or r.recovered for r in resumed)

    session = report.sessions[1]
    assert session["reason"] == "stream_loss"
    assert (session["missing_from"], session["missing_to"]) == (504, 509)
    assert session["reseed_snapshot_id"] == 515
    assert session["recovered_flag"] is True
    assert report.metrics["gap_count"] == 1.0


def test_recovered_flag_holds_until_exact_contiguous_diff():
    _, sink, _, _, _ = _run(
        [StreamOpened(1, 1), diff(510, 515), diff(516, 516)],
        [snap(500), snap(512)],
    )

    # seed(500), reseed(512), bridging 510-515, exact 516
    assert [r.last_update_id for r in sink.records[::3]] == [500, 512, 515, 516]
    assert [r.recovered for r in sink.records[::3]] == [False, True, True, False]
    assert [r.gap_detected for r in sink.records[::3]] == [False, True, False, False]


def test_gap_right_after_reconnect_is_tagged_reconnect():
    report, _, orchestrator, _, _ = _run(
        [StreamOpened(1, 1), diff(501, 501), StreamOpened(2, 1), diff(600, 601)],
        [snap(500), snap(601)],
    )

    assert report.sessions[1]["reason"] == "reconnect"
    assert report.metrics["reconnects"] == 1.0
    assert orchestrator.book.last_update_id is not None


def test_snapshot_retry_then_success():
    report, sink, _, _, fetcher = _run(
        [StreamOpened(1, 1), diff(501, 501)],
        [TransportError("timeout"), TransportError("503"), snap(500)],
    )

    assert report.outcome == RunOutcome.COMPLETED
    assert fetcher.calls == 3
    assert report.sessions[0]["attempts"] == 3
    assert report.last_update_id == 501
    assert len(sink.records) == 6


def test_exhausted_retries_end_run_unresolved():
    report, sink, _, reader, _ = _run(
        [StreamOpened(1, 1), diff(501, 501), diff(510, 511), diff(512, 512)],
        [snap(500)] + [TransportError("down")] * 3,
        retry_max=3,
    )

    assert report.outcome == RunOutcome.UNRESOLVED_GAP
    assert report.phase == BookPhase.GAPPED
    assert report.last_update_id == 501
    assert "down" in report.error
    assert reader.closed
    # Nothing is emitted for a gapped book.
    assert {r.last_update_id for r in sink.records} == {500, 501}


def test_recovery_buffer_drops_oldest():
    report, _, _, _, _ = _run(
        [StreamOpened(1, 1), diff(510, 515), diff(516, 516), diff(517, 517), diff(518, 518)],
        [snap(500), snap(516)],
        drain_on={2},
        recovery_buffer_max=2,
    )

    session = report.sessions[1]
    assert session["buffered"] == 3
    assert session["dropped"] == 2
    assert report.metrics["drop_rate_ppm"] > 0
    assert report.last_update_id == 518


def test_snapshot_behind_buffer_fetches_again():
    report, _, _, _, fetcher = _run(
        [StreamOpened(1, 1), diff(510, 515), diff(516, 516), diff(530, 531)],
        [snap(500), snap(516), snap(531)],
        drain_on={2},
    )

    assert fetcher.calls == 3
    assert report.sessions[1]["reseed_snapshot_id"] == 531
    assert report.last_update_id == 531
    assert report.outcome == RunOutcome.COMPLETED


def test_deadline_stops_intake():
    t = {"v": 0.0}
    events = [StreamOpened(1, 1)] + [diff(i, i) for i in range(501, 520)]
    reader = FakeReader(events, on_read=lambda: t.update(v=t["v"] + 1.0))
    fetcher = FakeFetcher([snap(500)])
    sink = MemorySink()
    emitter = RecordEmitter(venue="binance", symbol="BTCUSDT", scale=SCALE, sink=sink)
    deadline = RunDeadline(6.0, grace_s=1.0, clock=lambda: t["v"])
    orchestrator = RecoveryOrchestrator(BookStateMachine(), reader, fetcher, emitter, deadline)

    report = asyncio.run(orchestrator.run())

    assert report.outcome == RunOutcome.DEADLINE
    assert report.last_update_id < 519
    assert reader.closed
    assert sink.flushes >= 1
    assert orchestrator.book.phase == BookPhase.TERMINATED


def test_deadline_during_recovery_is_unresolved():
    t = {"v": 0.0}

    class SlowFailingFetcher(FakeFetcher):
        async def fetch(self):
            self.calls += 1
            if self.calls == 1:
                return snap(500)
            t["v"] += 0.6
            raise TransportError("timeout")

    reader = FakeReader([StreamOpened(1, 1), diff(501, 501), diff(510, 511)])
    sink = MemorySink()
    emitter = RecordEmitter(venue="binance", symbol="BTCUSDT", scale=SCALE, sink=sink)
    orchestrator = RecoveryOrchestrator(
        BookStateMachine(),
        reader,
        SlowFailingFetcher([]),
        emitter,
        RunDeadline(1.0, clock=lambda: t["v"]),
        rand=lambda: 0.5,
    )

    report = asyncio.run(orchestrator.run())

    assert report.outcome == RunOutcome.UNRESOLVED_GAP
    assert report.phase == BookPhase.GAPPED
    assert report.sessions[-1]["reason"] == "stream_loss"
    assert report.sessions[-1]["resolved_at"] is None


def test_resent_ids_after_reconnect_keep_reconnect_reason():
    report, _, _, _, _ = _run(
        [StreamOpened(1, 1), diff(501, 501), StreamOpened(2, 1), diff(501, 501), diff(600, 601)],
        [snap(500), snap(601)],
    )

    assert report.sessions[1]["reason"] == "reconnect"
    assert (report.sessions[1]["missing_from"], report.sessions[1]["missing_to"]) == (502, 599)
    assert report.metrics["diffs_stale"] == 2.0


def test_reopen_seen_while_buffering_is_consumed_by_replay():
    report, _, orchestrator, _, _ = _run(
        [StreamOpened(1, 1), diff(501, 501), diff(510, 515), StreamOpened(2, 1), diff(516, 516)],
        [snap(500), snap(515)],
        drain_on={2},
    )

    assert report.sessions[1]["reason"] == "stream_loss"
    assert report.metrics["reconnects"] == 1.0
    assert report.last_update_id == 516
    assert orchestrator._fresh_connection is False
