import asyncio
import json

import lob_ingest.ws_stream as ws_mod
from lob_core.types import Diff, TickScale
from lob_ingest.deadline import RunDeadline
from lob_ingest.exchanges import BinanceAdapter
from lob_ingest.ws_stream import DiffStreamReader, StreamOpened

SCALE = TickScale("0.01", "1")


def _depth(first, last):
    return json.dumps(
        {
            "stream": "btcusdt@depth@100ms",
            "data": {"e": "depthUpdate", "E": 1, "U": first, "u": last, "b": [["100.00", "1"]], "a": []},
        }
    )


class _FakeWS:
    def __init__(self, messages, fail_when_empty):
        self.messages = list(messages)
        self.fail_when_empty = fail_when_empty
        self.closed = False

    async def recv(self):
        await asyncio.sleep(0)
        if self.messages:
            return self.messages.pop(0)
        if self.fail_when_empty:
            raise OSError("connection reset")
        await asyncio.sleep(10)

    async def ping(self, payload: bytes):
        fut = asyncio.get_running_loop().create_future()
        fut.set_result(0.0)
        return fut

    async def close(self):
        self.closed = True


class _FakeConnect:
    def __init__(self, ws: _FakeWS):
        self._ws = ws

    async def __aenter__(self):
        return self._ws

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _reader(on_status):
    return DiffStreamReader(
        ws_url="wss://fake/stream",
        adapter=BinanceAdapter(),
        scale=SCALE,
        on_status=on_status,
        ping_interval_s=0,
        reconnect_backoff_s=0.0,
        reconnect_backoff_max_s=0.0,
        recv_poll_timeout_s=0.05,
    )


def test_reader_decodes_frames_and_marks_reconnects(monkeypatch):
    sockets = [
        _FakeWS([_depth(1, 2), "not json", json.dumps({"result": None, "id": 1})], fail_when_empty=True),
        _FakeWS([_depth(3, 4)], fail_when_empty=False),
    ]
    kwargs_seen = []

    def fake_connect(url, **kwargs):
        kwargs_seen.append(kwargs)
        return _FakeConnect(sockets.pop(0))

    monkeypatch.setattr(ws_mod, "ws_connect", fake_connect)
    statuses = []

    async def main():
        reader = _reader(lambda typ, details: statuses.append(typ))
        reader.start(RunDeadline(30.0))
        events = []
        for _ in range(200):
            event = await reader.next_event(timeout=0.05)
            if event is not None:
                events.append(event)
            if len(events) == 4:
                break
        await reader.close()
        return reader, events

    reader, events = asyncio.run(main())

    assert [type(e) for e in events] == [StreamOpened, Diff, StreamOpened, Diff]
    assert [e.connection_id for e in events if isinstance(e, StreamOpened)] == [1, 2]
    assert [(e.first_update_id, e.last_update_id) for e in events if isinstance(e, Diff)] == [(1, 2), (3, 4)]
    assert events[1].ingest_ts_us > 0
    assert reader.open_count == 2
    assert "frame_dropped" in statuses
    assert "ws_transport_error" in statuses
    assert "ws_reconnect_wait" in statuses
    assert kwargs_seen[0]["ping_interval"] is None
    assert not reader.running


def test_reader_does_not_connect_after_deadline(monkeypatch):
    calls = {"n": 0}

    def fake_connect(url, **kwargs):
        calls["n"] += 1
        return _FakeConnect(_FakeWS([], fail_when_empty=False))

    monkeypatch.setattr(ws_mod, "ws_connect", fake_connect)

    async def main():
        reader = _reader(None)
        reader.start(RunDeadline(0.0))
        got = [e async for e in reader.events()]
        await reader.close()
        return got

    assert asyncio.run(main()) == []
    assert calls["n"] == 0


def test_session_expiry_rotates_connection(monkeypatch):
    statuses = []

    def fake_connect(url, **kwargs):
        return _FakeConnect(_FakeWS([], fail_when_empty=False))

    monkeypatch.setattr(ws_mod, "ws_connect", fake_connect)

    async def main():
        reader = _reader(lambda typ, details: statuses.append(typ))
        # Every session is already past its maximum age when it opens.
        reader.max_session_s = 0.0
        reader.start(RunDeadline(30.0))
        opened = []
        for _ in range(200):
            event = await reader.next_event(timeout=0.05)
            if isinstance(event, StreamOpened):
                opened.append(event)
            if len(opened) == 2:
                break
        await reader.close()
        return opened

    opened = asyncio.run(main())
    assert [e.connection_id for e in opened] == [1, 2]
    assert "ws_session_expired" in statuses
