import asyncio
import contextlib
import json
import logging
import os
import ssl
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Union

from websockets.asyncio.client import connect as ws_connect  # type: ignore
from websockets.exceptions import ConnectionClosed  # type: ignore

from lob_core.errors import TransportError
from lob_core.types import Diff, TickScale

from lob_ingest.backoff import backoff_delay
from lob_ingest.deadline import RunDeadline
from lob_ingest.exchanges.base import VenueAdapter


@dataclass(frozen=True)
class StreamOpened:
    """A (re)subscription went live; diffs after this may skip or resend ids."""

    connection_id: int
    attempt: int


StreamEvent = Union[StreamOpened, Diff]


class DiffStreamReader:
    """Websocket reader that decodes depth frames into Diffs on a bounded queue.

    Reconnects with jittered exponential backoff until the run deadline starts
    shutdown. The ingest timestamp of each Diff is taken when the frame is read.
    """

    def __init__(
        self,
        ws_url: str,
        adapter: VenueAdapter,
        scale: TickScale,
        on_status: Optional[Callable[[str, dict], None]] = None,
        insecure_tls: bool = False,
        ping_interval_s: int = 20,
        ping_timeout_s: int = 60,
        reconnect_backoff_s: float = 1.0,
        reconnect_backoff_max_s: float = 30.0,
        max_session_s: float = 23 * 3600 + 50 * 60,
        recv_poll_timeout_s: float = 1.0,
        max_queue: int = 1024,
    ):
        self.ws_url = ws_url
        self.adapter = adapter
        self.scale = scale
        self.on_status_cb = on_status
        self.insecure_tls = insecure_tls

        self.ping_interval_s = max(0, int(ping_interval_s))
        self.ping_timeout_s = max(1, int(ping_timeout_s))
        self.reconnect_backoff_s = max(0.0, float(reconnect_backoff_s))
        self.reconnect_backoff_max_s = max(self.reconnect_backoff_s, float(reconnect_backoff_max_s))
        self.max_session_s = max(0.0, float(max_session_s))
        self.recv_poll_timeout_s = max(0.01, float(recv_poll_timeout_s))
        self.max_queue = max(1, int(max_queue))

        self.open_count = 0
        self._ws = None
        self._stop = False
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._log = logging.getLogger("lob_ingest.stream")

    def _emit_status(self, typ: str, details: dict) -> None:
        try:
            if self.on_status_cb:
                self.on_status_cb(typ, details)
        except Exception:
            self._log.exception("Status callback error (type=%s)", typ)

    async def _ping_loop(self) -> None:
        if self.ping_interval_s <= 0 or self._ws is None:
            return
        while not self._stop:
            await asyncio.sleep(self.ping_interval_s)
            if self._stop or self._ws is None:
                return
            try:
                payload = os.urandom(4)
                pong_waiter = await self._ws.ping(payload)
                await asyncio.wait_for(pong_waiter, timeout=self.ping_timeout_s)
            except Exception as exc:
                self._emit_status("ws_ping_timeout", {"error": str(exc)})
                with contextlib.suppress(Exception):
                    await self._ws.close()
                return

    def _decode(self, msg, ingest_ts_us: int) -> Optional[Diff]:
        try:
            payload = json.loads(msg)
        except ValueError:
            self._emit_status("frame_dropped", {"reason": "invalid_json"})
            return None
        data = self.adapter.unwrap_depth(payload)
        if data is None:
            return None
        try:
            return self.adapter.parse_depth(data, self.scale, ingest_ts_us)
        except (KeyError, TypeError, ValueError) as exc:
            self._emit_status("frame_dropped", {"reason": "undecodable", "error": str(exc)})
            return None

    async def _read_loop(self, session_deadline: float, deadline: RunDeadline) -> None:
        assert self._ws is not None and self._queue is not None
        while not self._stop:
            if deadline.stopping():
                self._stop = True
                return
            if time.monotonic() >= session_deadline:
                self._emit_status("ws_session_expired", {"max_session_s": self.max_session_s})
                return

            timeout = min(self.recv_poll_timeout_s, max(0.01, deadline.available()))
            try:
                msg = await asyncio.wait_for(self._ws.recv(), timeout=timeout)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosed as exc:
                raise TransportError(f"connection closed code={getattr(exc, 'code', None)}") from exc
            except Exception as exc:
                raise TransportError(f"recv failed: {exc}") from exc

            if msg is None:
                raise TransportError("connection returned no data")

            diff = self._decode(msg, int(time.time() * 1_000_000))
            if diff is not None:
                await self._queue.put(diff)

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.insecure_tls:
            return None
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def _run_async(self, deadline: RunDeadline) -> None:
        assert self._queue is not None
        attempt = 0

        while not self._stop and not deadline.stopping():
            attempt += 1
            session_deadline = time.monotonic() + self.max_session_s
            ssl_ctx = self._ssl_context()
            try:
                connect_kwargs = {
                    "ping_interval": None,
                    "ping_timeout": None,
                    "close_timeout": 5,
                    "max_queue": self.max_queue,
                }
                if ssl_ctx is not None:
                    connect_kwargs["ssl"] = ssl_ctx
                async with ws_connect(self.ws_url, **connect_kwargs) as ws:
                    self._ws = ws
                    self.open_count += 1
                    self._emit_status("ws_connect", {"attempt": attempt, "open_count": self.open_count})
                    await self._queue.put(StreamOpened(connection_id=self.open_count, attempt=attempt))
                    attempt = 0

                    ping_task = asyncio.create_task(self._ping_loop())
                    try:
                        await self._read_loop(session_deadline=session_deadline, deadline=deadline)
                    finally:
                        ping_task.cancel()
                        with contextlib.suppress(asyncio.CancelledError, Exception):
                            await ping_task
            except TransportError as exc:
                self._emit_status("ws_transport_error", {"error": str(exc)})
            except Exception as exc:
                self._emit_status("ws_run_exception", {"error": str(exc)})
                self._log.exception("WebSocket run exception")
            finally:
                self._ws = None

            if self._stop or deadline.stopping():
                break

            backoff = backoff_delay(max(1, attempt), self.reconnect_backoff_s, self.reconnect_backoff_max_s)
            backoff = min(backoff, deadline.available())
            self._emit_status("ws_reconnect_wait", {"sleep_s": float(backoff), "attempt": attempt})
            await asyncio.sleep(backoff)

    def start(self, deadline: RunDeadline) -> None:
        """Start reading in the background of the running loop."""
        if self._task is not None:
            raise RuntimeError("DiffStreamReader already started")
        self._stop = False
        self._queue = asyncio.Queue(maxsize=self.max_queue)
        self._task = asyncio.get_running_loop().create_task(self._run_async(deadline))

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def next_event(self, timeout: float) -> Optional[StreamEvent]:
        """Next diff or open marker, or None if nothing arrived within timeout."""
        if self._queue is None:
            raise RuntimeError("DiffStreamReader not started")
        if timeout <= 0:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Lazy sequence of events for the life of the run."""
        while True:
            event = await self.next_event(self.recv_poll_timeout_s)
            if event is not None:
                yield event
                continue
            if not self.running and (self._queue is None or self._queue.empty()):
                return

    async def close(self) -> None:
        self._stop = True
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
