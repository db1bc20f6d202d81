from __future__ import annotations
import asyncio, time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .client import TimerClient, describe
from .errors import (DuplicateValue, MalformedResponse, ProtocolError, RequestCancelled, RequestTimeout,
                     SlotNotReserved, TimerError, TransportUnavailable)
from .logs import NdjsonLogger
from .retry import RetryPolicy
from .session import Session, SessionState
from .shots import ShotSnapshot

# Failures that cost one operation for one tick; anything else ends the session.
SOFT_ERRORS = (RequestTimeout, ProtocolError, MalformedResponse)


class PollerPhase(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    AWAITING_BEEP = "awaiting_beep"
    POLLING = "polling"


@dataclass
class PollerSettings:
    tick_ms: int = 500
    beep_poll_ms: int = 200
    snum_cooldown_ms: int = 400
    post_start_delay_ms: int = 120
    reset_on_start: bool = True


class Poller:
    """Drive one drill: arm the timer, wait for the beep, then collect shots.

    STOPPED -> STARTING -> AWAITING_BEEP -> POLLING -> STOPPED. Work runs in
    a single background task; each await is followed by a session-token
    check so replies that arrive after stop/reset never touch a newer
    session's data.
    """

    def __init__(self, client: TimerClient, session: Optional[Session] = None,
                 settings: Optional[PollerSettings] = None, retry: Optional[RetryPolicy] = None,
                 logger: Optional[NdjsonLogger] = None):
        self.client = client
        self.logger = logger or client.logger
        self.session = session or Session(client, self.logger)
        self.settings = settings or PollerSettings()
        self.retry = retry or RetryPolicy()
        self.phase = PollerPhase.STOPPED
        self.last_error: Optional[BaseException] = None
        self.skipped_ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[ShotSnapshot], None]] = []
        self.latest: ShotSnapshot = self.session.snapshot()

    # ---------- public API ----------

    @property
    def state(self) -> SessionState:
        return self.session.state.state

    @property
    def running(self) -> bool:
        return self.phase is not PollerPhase.STOPPED

    def on_update(self, fn: Callable[[ShotSnapshot], None]):
        self._listeners.append(fn)

    def snapshot(self) -> ShotSnapshot:
        return self.latest

    async def start(self, min_ms: int, max_ms: int) -> bool:
        """Begin a new drill with the given random start window (ms).

        Returns False if a drill is already in progress.
        """
        if self.running:
            self._log("info", "start_ignored", text="Start skipped: already running")
            return False
        if not self.client.correlator.ready:
            self._log("warn", "start_skipped", text="Start skipped: BLE not connected")
            raise TransportUnavailable("not connected")
        self.last_error = None
        token = self.session.begin()
        self._publish()
        self.phase = PollerPhase.STARTING
        self._task = asyncio.create_task(self._run(token, int(min_ms), int(max_ms)), name=f"poller-{token}")
        return True

    async def wait(self):
        """Wait for the current drill task to finish (stop, reset or fatal error)."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def stop(self):
        """Stop polling; recorded shots stay readable until the next start/reset."""
        was = self.phase
        self.session.invalidate()
        self.client.correlator.cancel("poller stopped")
        await self._cancel_task()
        self.phase = PollerPhase.STOPPED
        if was is not PollerPhase.STOPPED:
            self._log("info", "poll_stopped", text="Poll: stopped")

    async def reset(self, reissue_standby: bool = True):
        """Stop, clear shots and state, and optionally zero the timer's counter."""
        await self.stop()
        self.session.begin()
        self._publish()
        if not reissue_standby or not self.client.correlator.ready:
            return
        try:
            await self.client.standby()
            await self.client.ready()
            self._log("info", "device_reset", text="Device SNUM reset via #S_STB→#S_GRD")
        except TimerError as e:
            self._log("warn", "device_reset_error", err=describe(e), text=f"Device reset error: {e}")

    def handle_disconnect(self, reason: str = "disconnected"):
        """Transport dropped: end the drill immediately and remember why."""
        self.session.invalidate()
        self.client.correlator.detach(reason)
        if self.running:
            self.last_error = TransportUnavailable(reason)
            self._log("error", "disconnected", reason=reason, text=f"BLE: {reason}")
        self.phase = PollerPhase.STOPPED
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # ---------- internals ----------

    def _log(self, typ: str, msg: str, **data):
        self.logger.write({"type": typ, "msg": msg, "data": data})

    def _publish(self):
        self.latest = self.session.snapshot()
        for fn in self._listeners:
            try:
                fn(self.latest)
            except Exception as e:
                self._log("error", "listener_error", err=describe(e), text=f"Update listener failed: {e!r}")

    async def _cancel_task(self):
        t, self._task = self._task, None
        if t is None or t.done():
            return
        if t is asyncio.current_task():
            return
        t.cancel()
        await asyncio.gather(t, return_exceptions=True)

    async def _run(self, token: int, min_ms: int, max_ms: int):
        alive = lambda: self.session.is_current(token)
        try:
            await self._starting(alive, min_ms, max_ms)
            if not alive():
                return
            self.phase = PollerPhase.AWAITING_BEEP
            if not await self._await_beep(alive):
                return
            self.phase = PollerPhase.POLLING
            self._log("info", "poll_started", text="Poll: started")
            await self._poll_loop(alive)
        except RequestCancelled:
            pass
        except Exception as e:
            # TransportUnavailable or anything unexpected ends the drill
            if alive():
                self.last_error = e
                self._log("error", "poll_fatal", err=describe(e), text=f"Poll error: {e}")
        finally:
            if alive():
                self.session.invalidate()
                self.phase = PollerPhase.STOPPED

    async def _starting(self, alive: Callable[[], bool], min_ms: int, max_ms: int):
        s = self.settings
        if s.reset_on_start:
            try:
                await self.client.standby()
                await self.client.ready()
            except TransportUnavailable:
                raise
            except TimerError as e:
                self._log("warn", "standby_failed", err=describe(e))
        await self.client.set_start_window(min_ms, max_ms)
        self._log("info", "beep_sent", min_ms=min_ms, max_ms=max_ms, text="BEEP sent (#E_STARTT)")
        try:
            await self.client.start_beep()
        except ProtocolError as e:
            self._log("warn", "start_error", err=describe(e), text=f"Start error: {e}")
        if alive():
            await asyncio.sleep(s.post_start_delay_ms / 1000.0)

    async def _await_beep(self, alive: Callable[[], bool]) -> bool:
        """Poll state and count until RUNNING; shots seen meanwhile are false starts."""
        while alive():
            try:
                state = await self.session.state.refresh_state(alive)
            except SOFT_ERRORS as e:
                self._log("warn", "state_error", err=describe(e))
            else:
                if not alive():
                    return False
                if state is SessionState.RUNNING:
                    self._log("info", "beep", text="STATE=RUNNING (2), polling shots")
                    self._publish()
                    return True
                try:
                    count = await self.client.get_shot_count()
                except SOFT_ERRORS as e:
                    self._log("warn", "snum_error", err=describe(e))
                else:
                    if not alive():
                        return False
                    if self.session.advance_count(count):
                        self._publish()
            await asyncio.sleep(self.settings.beep_poll_ms / 1000.0)
        return False

    async def _poll_loop(self, alive: Callable[[], bool]):
        period = self.settings.tick_ms / 1000.0
        loop = asyncio.get_running_loop()
        next_due = loop.time()
        while alive():
            await self._tick(alive)
            next_due += period
            now = loop.time()
            while next_due < now:
                # a slow tick swallows the ones that fell due meanwhile
                next_due += period
                self.skipped_ticks += 1
            await asyncio.sleep(next_due - now)

    async def _tick(self, alive: Callable[[], bool]):
        s = self.session
        before = s.state.state
        try:
            await s.state.refresh_state(alive)
        except SOFT_ERRORS as e:
            self._log("warn", "state_error", err=describe(e))
        if not alive():
            return
        if s.state.state is not before:
            self._publish()

        now = time.monotonic()
        if s.snum_ts is None or (now - s.snum_ts) * 1000.0 >= self.settings.snum_cooldown_ms:
            try:
                count = await self.client.get_shot_count()
            except SOFT_ERRORS as e:
                self._log("warn", "snum_error", err=describe(e))
            else:
                if not alive():
                    return
                s.snum_value, s.snum_ts = count, now
        snum = s.snum_value
        if snum <= 0:
            return
        if s.advance_count(snum):
            self._publish()
        next_id = s.shots.next_unfilled(limit=snum)
        if next_id is None:
            return
        await self._fetch(alive, next_id)

    async def _fetch(self, alive: Callable[[], bool], shot_id: int):
        s = self.session
        limit = self.retry.max_attempts

        async def attempt(n: int) -> int:
            s.attempts[shot_id] = s.attempts.get(shot_id, 0) + 1
            return await self.client.get_shot_time(shot_id)

        def on_retry(n: int, e: BaseException):
            self._log("info", "stime_retry", id=shot_id, err=describe(e),
                      text=f"Retry STIME id={shot_id} ({n}/{limit})")

        try:
            ms = await self.retry.run(attempt, on_retry)
        except SOFT_ERRORS as e:
            self._log("warn", "stime_give_up", id=shot_id, tries=s.attempts.get(shot_id, 0), err=describe(e),
                      text=f"Give up STIME id={shot_id} after {s.attempts.get(shot_id, 0)} tries")
            return
        if not alive():
            self._log("debug", "stale_reply", id=shot_id, ms=ms)
            return
        try:
            stored = s.shots.fill_slot(shot_id, ms)
        except (DuplicateValue, SlotNotReserved) as e:
            self._log("warn", type(e).__name__, id=shot_id, ms=ms, text=str(e))
            return
        if stored:
            s.attempts.pop(shot_id, None)
            self._publish()
