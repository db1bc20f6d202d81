"""In-memory shot timer speaking the #G_/#S_/#E_ line protocol.

Implements the transport interface the bridge expects (is_connected,
on_chunk, on_disconnect, start, stop, write_line) and answers from a small
device model. Replies can be chunked, delayed, dropped or replaced by
``#ERR=`` codes to exercise the client's edge cases.
"""
import asyncio
import time
from typing import Callable, Dict, List, Optional

from shot_timer_bridge.errors import TransportUnavailable


class FakeTimer:
    def __init__(self, *, chunk_size: Optional[int] = None, reply_delay_s: float = 0.0,
                 line_ending: str = "\r\n", ack_start: bool = True, beep_after_s: Optional[float] = None):
        self.state = 0
        self.shot_times: List[int] = []
        self.snum_override: Optional[int] = None
        self.tmin: Optional[int] = None
        self.tmax: Optional[int] = None
        self.chunk_size = chunk_size
        self.reply_delay_s = reply_delay_s
        self.line_ending = line_ending
        self.ack_start = ack_start
        self.beep_after_s = beep_after_s
        # command text -> queued error codes answered instead of the real value
        self.errors: Dict[str, List[str]] = {}
        # command text -> queued raw replies answered instead of the real value
        self.raw_replies: Dict[str, List[str]] = {}
        # command text -> number of requests to leave unanswered
        self.drop: Dict[str, int] = {}
        # command text -> extra delay for its reply
        self.delays: Dict[str, float] = {}
        self.commands: List[str] = []
        self.outstanding = 0
        self.max_outstanding = 0
        self.connected = False
        self._on_chunk: List[Callable[[bytes], None]] = []
        self._on_disconnect: List[Callable[[str], None]] = []

    # ---------- transport interface ----------

    @property
    def is_connected(self) -> bool:
        return self.connected

    def on_chunk(self, fn: Callable[[bytes], None]):
        self._on_chunk.append(fn)

    def on_disconnect(self, fn: Callable[[str], None]):
        self._on_disconnect.append(fn)

    async def start(self):
        self.connected = True

    async def stop(self):
        self.connected = False

    async def write_line(self, text: str):
        if not self.connected:
            raise TransportUnavailable("TX not ready")
        cmd = text.rstrip("\r")
        self.commands.append(cmd)
        reply = self._handle(cmd)
        if reply is None:
            return
        self.outstanding += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        delay = self.delays.get(cmd, self.reply_delay_s)
        asyncio.get_running_loop().call_later(delay, self._reply, reply)

    # ---------- test controls ----------

    @property
    def snum(self) -> int:
        return self.snum_override if self.snum_override is not None else len(self.shot_times)

    def add_shot(self, ms: int):
        self.shot_times.append(ms)

    def push(self, line: str):
        """Deliver an unsolicited line."""
        self._deliver((line + self.line_ending).encode("ascii"))

    def disconnect(self, reason: str = "link lost"):
        self.connected = False
        for fn in self._on_disconnect:
            fn(reason)

    def count(self, cmd: str) -> int:
        return sum(1 for c in self.commands if c == cmd)

    # ---------- device model ----------

    def _handle(self, cmd: str) -> Optional[str]:
        if self.drop.get(cmd, 0) > 0:
            self.drop[cmd] -= 1
            return None
        if self.errors.get(cmd):
            return f"#ERR={self.errors[cmd].pop(0)}"
        if self.raw_replies.get(cmd):
            return self.raw_replies[cmd].pop(0)
        if cmd == "#G_STATE":
            return f"#G_STATE={self.state}"
        if cmd == "#G_SNUM":
            return f"#G_SNUM={self.snum}"
        if cmd.startswith("#G_STIME="):
            dev_id = int(cmd.split("=", 1)[1])
            if 0 <= dev_id < len(self.shot_times):
                return f"#G_STIME={self.shot_times[dev_id]}"
            return "#ERR=0A"
        if cmd.startswith("#S_TMIN="):
            self.tmin = int(cmd.split("=", 1)[1])
            return None
        if cmd.startswith("#S_TMAX="):
            self.tmax = int(cmd.split("=", 1)[1])
            return None
        if cmd == "#E_STARTT":
            self.state = 1
            if self.beep_after_s is not None:
                asyncio.get_running_loop().call_later(self.beep_after_s, self._beep)
            return "#E_STARTT=OK" if self.ack_start else None
        if cmd == "#S_STB":
            self.state = 0
            return None
        if cmd == "#S_GRD":
            self.shot_times.clear()
            return None
        return "#ERR=06"

    def _beep(self):
        if self.state == 1:
            self.state = 2

    def _reply(self, line: str):
        self.outstanding -= 1
        self._deliver((line + self.line_ending).encode("ascii"))

    def _deliver(self, data: bytes):
        if not self.connected:
            return
        step = self.chunk_size or len(data)
        for i in range(0, len(data), step):
            for fn in self._on_chunk:
                fn(data[i:i + step])


async def wait_until(pred: Callable[[], bool], timeout_s: float = 3.0, interval_s: float = 0.005):
    deadline = time.monotonic() + timeout_s
    while not pred():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval_s)


async def wait_for_phase(poller, phase, timeout_s: float = 5.0):
    await wait_until(lambda: poller.phase is phase, timeout_s)
