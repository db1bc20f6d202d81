from __future__ import annotations
from enum import IntEnum
from typing import TYPE_CHECKING, Callable, Dict, Optional

from .errors import MalformedResponse
from .logs import NdjsonLogger
from .shots import ShotBook, ShotSnapshot

if TYPE_CHECKING:
    from .client import TimerClient


class SessionState(IntEnum):
    IDLE = 0
    COUNTDOWN = 1
    RUNNING = 2

    @classmethod
    def from_code(cls, code: int) -> "SessionState":
        try:
            return cls(code)
        except ValueError:
            raise MalformedResponse(f"unknown timer state {code}") from None

    @property
    def label(self) -> str:
        return {0: "Idle", 1: "Countdown", 2: "Running"}[int(self)]


class SessionStateMachine:
    """Mirror of the timer's exercise state.

    The state only changes on a successful ``#G_STATE`` read; nothing else
    (new shots, elapsed time, the start command) moves it.
    """

    def __init__(self, client: "TimerClient", logger: Optional[NdjsonLogger] = None):
        self.client = client
        self.logger = logger or client.logger
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is SessionState.RUNNING

    async def refresh_state(self, is_current: Callable[[], bool] = lambda: True) -> SessionState:
        """Query the timer and adopt the answer.

        Errors propagate and leave the state unchanged. ``is_current`` is
        checked after the round trip so a reply that outlived its session
        is not applied.
        """
        code = await self.client.get_state()
        new = SessionState.from_code(code)
        if not is_current():
            return self._state
        if new is not self._state:
            self.logger.write({"type": "event", "msg": "state", "data": {"from": self._state.name, "to": new.name}})
            self._state = new
        return self._state

    def clear(self):
        self._state = SessionState.IDLE


class Session:
    """All mutable per-drill data, invalidated wholesale by bumping ``token``."""

    def __init__(self, client: "TimerClient", logger: Optional[NdjsonLogger] = None):
        self.logger = logger or client.logger
        self.token = 0
        self.state = SessionStateMachine(client, self.logger)
        self.shots = ShotBook(self.logger)
        # cached #G_SNUM reading: (value, monotonic seconds)
        self.snum_value = 0
        self.snum_ts: Optional[float] = None
        # shot id -> fetch attempts so far
        self.attempts: Dict[int, int] = {}

    def begin(self) -> int:
        """Start a fresh session: new token, no shots, state IDLE."""
        self.token += 1
        self.shots.reset()
        self.state.clear()
        self.attempts.clear()
        self.snum_value = 0
        self.snum_ts = None
        return self.token

    def invalidate(self) -> int:
        """Orphan in-flight work without touching recorded data."""
        self.token += 1
        return self.token

    def is_current(self, token: int) -> bool:
        return token == self.token

    def advance_count(self, new_count: int):
        return self.shots.advance_count(new_count, running=self.state.running)

    def snapshot(self) -> ShotSnapshot:
        return self.shots.snapshot(state=self.state.state, token=self.token)
