from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from .errors import RequestCancelled, RequestTimeout, TimerError, TransportUnavailable
from .framing import LineFramer
from .logs import NdjsonLogger
from .protocol import Predicate


class LineTransport(Protocol):
    """What the correlator needs from a link to the timer."""

    @property
    def is_connected(self) -> bool: ...

    def on_chunk(self, fn: Callable[[bytes], None]) -> None: ...

    async def write_line(self, text: str) -> None: ...


@dataclass(eq=False)
class _Outgoing:
    text: str
    future: "asyncio.Future[Optional[str]]"
    predicate: Optional[Predicate] = None
    timeout_s: float = 0.0
    token: int = 0

    @property
    def expects_reply(self) -> bool:
        return self.predicate is not None


@dataclass
class CorrelatorStats:
    sent: int = 0
    matched: int = 0
    unmatched: int = 0
    timeouts: int = 0
    cancelled: int = 0
    tx_errors: int = 0


class Correlator:
    """Serialize commands over one transport and pair each with its reply.

    Outgoing commands go through a FIFO consumed by a single sender task, so
    at most one command is on the wire and at most one request is pending at
    any time. Inbound chunks are queued by :meth:`feed` (safe to call from the
    transport's notification callback) and framed into lines by a reader
    task. Each line is offered to the pending request's predicate; a line
    resolves at most one request.
    """

    def __init__(self, logger: Optional[NdjsonLogger] = None):
        self.logger = logger or NdjsonLogger(None, "timer")
        self.stats = CorrelatorStats()
        self._transport: Optional[LineTransport] = None
        self._framer = LineFramer()
        self._inbound: Optional[asyncio.Queue] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._pending: Optional[_Outgoing] = None
        self._tasks: List[asyncio.Task] = []
        self._listeners: List[Callable[[str], None]] = []
        self._subscribed: List[LineTransport] = []
        self._token = 0

    # ---------- lifecycle ----------

    @property
    def transport(self) -> Optional[LineTransport]:
        return self._transport

    @property
    def ready(self) -> bool:
        return self._transport is not None and self._transport.is_connected

    def attach(self, transport: LineTransport):
        """Route ``transport``'s chunks here; re-attaching the same one does not subscribe twice."""
        self._transport = transport
        self._framer.clear()
        if not any(t is transport for t in self._subscribed):
            transport.on_chunk(self._feed_from(transport))
            self._subscribed.append(transport)

    def _feed_from(self, transport: LineTransport) -> Callable[[bytes], None]:
        def cb(chunk: bytes):
            # chunks from a transport that is no longer attached are dropped
            if self._transport is transport:
                self.feed(chunk)
        return cb

    def detach(self, reason: str = "transport detached"):
        """Drop the transport and fail everything waiting on it."""
        self._transport = None
        self._fail_all(lambda: TransportUnavailable(reason))

    def start(self):
        if self._tasks:
            return
        self._inbound = asyncio.Queue()
        self._outbound = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._reader_loop(), name="correlator-reader"),
            asyncio.create_task(self._sender_loop(), name="correlator-sender"),
        ]

    async def stop(self):
        self._fail_all(lambda: RequestCancelled("correlator stopped"))
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def __aenter__(self) -> "Correlator":
        self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()

    def add_listener(self, fn: Callable[[str], None]):
        """Observe every inbound line (matched or not)."""
        self._listeners.append(fn)

    # ---------- inbound ----------

    def feed(self, chunk: bytes):
        if self._inbound is None:
            self.start()
        assert self._inbound is not None
        self._inbound.put_nowait(bytes(chunk))

    async def _reader_loop(self):
        assert self._inbound is not None
        while True:
            chunk = await self._inbound.get()
            for line in self._framer.feed(chunk):
                self._dispatch(line)

    def _dispatch(self, line: str):
        self.logger.write({"type": "debug", "msg": "RX", "data": {"line": line}})
        for fn in self._listeners:
            fn(line)
        p = self._pending
        if p is not None and not p.future.done() and p.predicate is not None:
            try:
                hit = p.predicate(line)
            except Exception as e:
                self.logger.write({"type": "warn", "msg": "predicate_error", "data": {"line": line, "err": repr(e)}})
                hit = False
            if hit:
                # consumed: a later request can never see this line
                self._pending = None
                self.stats.matched += 1
                p.future.set_result(line)
                return
        self.stats.unmatched += 1
        self.logger.write({"type": "debug", "msg": "rx_unmatched", "data": {"line": line}})

    # ---------- outbound ----------

    def _check_ready(self):
        if self._transport is None or not self._transport.is_connected:
            raise TransportUnavailable("TX not ready")
        if not self._tasks:
            self.start()

    async def send(self, text: str) -> None:
        """Queue a fire-and-forget command; returns once it has been written."""
        self._check_ready()
        fut = asyncio.get_running_loop().create_future()
        assert self._outbound is not None
        self._outbound.put_nowait(_Outgoing(text, fut, token=self._token))
        await fut

    async def send_and_await(self, text: str, predicate: Predicate, timeout_ms: int) -> str:
        """Send ``text`` and return the first inbound line accepted by ``predicate``.

        Raises TransportUnavailable, RequestTimeout or RequestCancelled.
        The deadline starts when the command is written, not when queued.
        """
        self._check_ready()
        fut = asyncio.get_running_loop().create_future()
        assert self._outbound is not None
        self._outbound.put_nowait(_Outgoing(text, fut, predicate, timeout_ms / 1000.0, self._token))
        return await fut

    async def _sender_loop(self):
        assert self._outbound is not None
        while True:
            item: _Outgoing = await self._outbound.get()
            if item.future.done() or item.token != self._token:
                if not item.future.done():
                    item.future.set_exception(RequestCancelled(item.text))
                continue
            transport = self._transport
            if transport is None or not transport.is_connected:
                item.future.set_exception(TransportUnavailable("TX not ready"))
                continue
            if item.expects_reply:
                # armed before writing so a fast reply cannot slip past
                self._pending = item
            try:
                await transport.write_line(item.text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._pending is item:
                    self._pending = None
                self.stats.tx_errors += 1
                self.logger.write({"type": "error", "msg": "TX_ERROR", "data": {"cmd": item.text, "err": repr(e)}})
                if not item.future.done():
                    item.future.set_exception(TransportUnavailable(f"write failed: {e}"))
                continue
            self.stats.sent += 1
            self.logger.write({"type": "debug", "msg": "TX", "data": {"cmd": item.text}})
            if not item.expects_reply:
                if not item.future.done():
                    item.future.set_result(None)
                continue
            done, _ = await asyncio.wait({item.future}, timeout=item.timeout_s)
            if self._pending is item:
                self._pending = None
            if not done:
                self.stats.timeouts += 1
                self.logger.write({"type": "warn", "msg": "request_timeout",
                                   "data": {"cmd": item.text, "timeout_ms": int(item.timeout_s * 1000)}})
                item.future.set_exception(RequestTimeout(f"{item.text}: no reply within {int(item.timeout_s * 1000)} ms"))

    # ---------- cancellation ----------

    def cancel(self, reason: str = "session aborted"):
        """Fail the pending request and everything queued behind it."""
        self._fail_all(lambda: RequestCancelled(reason))

    def _fail_all(self, make_exc: Callable[[], TimerError]):
        # queued items carrying an old token are failed by the sender loop
        self._token += 1
        p, self._pending = self._pending, None
        if p is not None and not p.future.done():
            self.stats.cancelled += 1
            p.future.set_exception(make_exc())
        if self._outbound is None:
            return
        while True:
            try:
                item = self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                break
            if not item.future.done():
                self.stats.cancelled += 1
                item.future.set_exception(make_exc())
