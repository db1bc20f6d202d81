from __future__ import annotations
import asyncio
from typing import Callable, Optional, Protocol

from .ble.hm10 import Hm10Transport
from .client import TimerClient, describe
from .config import AppCfg, load_config
from .correlator import Correlator, LineTransport
from .errors import TransportUnavailable
from .logs import NdjsonLogger
from .poller import Poller, PollerSettings
from .retry import RetryPolicy
from .session import Session
from .shots import ShotSnapshot, format_ms


class TimerLink(LineTransport, Protocol):
    def on_disconnect(self, fn: Callable[[str], None]) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


def make_logger(cfg: AppCfg) -> NdjsonLogger:
    lc = cfg.logging
    logger = NdjsonLogger(lc.dir, lc.file_prefix, dual_file=lc.dual_file, debug_subdir=lc.debug_subdir,
                          history=lc.history)
    logger.mode = lc.mode
    if lc.verbose_whitelist:
        logger.verbose_whitelist = set(lc.verbose_whitelist)
    return logger


class TimerBridge:
    """One timer link plus the drill machinery that runs over it.

    ``transport`` defaults to an HM-10 BLE link built from ``cfg.ble``.
    """

    def __init__(self, cfg: AppCfg, transport: Optional[TimerLink] = None,
                 logger: Optional[NdjsonLogger] = None):
        self.cfg = cfg
        self.logger = logger or make_logger(cfg)
        t = cfg.timer
        if transport is None:
            b = cfg.ble
            transport = Hm10Transport(b.adapter, b.mac or b.name, service_uuid=b.service_uuid,
                                      char_uuid=b.char_uuid, connect_timeout_s=b.connect_timeout_s,
                                      scan_timeout_s=b.scan_timeout_s, write_response=b.write_response,
                                      logger=self.logger)
        self.transport = transport
        self.correlator = Correlator(self.logger)
        self.client = TimerClient(self.correlator, state_timeout_ms=t.state_timeout_ms,
                                  count_timeout_ms=t.count_timeout_ms, time_timeout_ms=t.time_timeout_ms,
                                  start_ack_timeout_ms=t.start_ack_timeout_ms)
        self.session = Session(self.client, self.logger)
        self.poller = Poller(
            self.client, self.session,
            PollerSettings(tick_ms=t.tick_ms, beep_poll_ms=t.beep_poll_ms, snum_cooldown_ms=t.snum_cooldown_ms,
                           post_start_delay_ms=t.post_start_delay_ms, reset_on_start=t.reset_on_start),
            RetryPolicy(max_attempts=t.max_fill_retries, pause_ms=t.retry_pause_ms),
            self.logger,
        )
        self._status: Optional[asyncio.Task] = None
        self.transport.on_disconnect(self._on_disconnect)

    @property
    def connected(self) -> bool:
        return self.correlator.ready

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.poller.last_error

    def snapshot(self) -> ShotSnapshot:
        return self.poller.snapshot()

    async def start(self, status_every_s: float = 5.0):
        self.correlator.start()
        await self.transport.start()
        self.correlator.attach(self.transport)
        if status_every_s > 0:
            self._status = asyncio.create_task(self._status_task(status_every_s))

    async def stop(self):
        if self._status is not None:
            self._status.cancel()
            await asyncio.gather(self._status, return_exceptions=True)
            self._status = None
        await self.poller.stop()
        self.correlator.detach("bridge stopped")
        await self.transport.stop()
        await self.correlator.stop()

    # ---------- drill control ----------

    async def start_drill(self, mode: Optional[str] = None) -> bool:
        lo, hi = self.cfg.timer.window(mode)
        self.logger.write({"type": "info", "msg": "drill_start", "data": {"mode": mode or self.cfg.timer.mode,
                                                                         "tmin_ms": lo, "tmax_ms": hi}})
        return await self.poller.start(lo, hi)

    async def stop_drill(self):
        await self.poller.stop()

    async def reset(self):
        await self.poller.reset(reissue_standby=True)

    # ---------- internals ----------

    def _on_disconnect(self, reason: str):
        self.poller.handle_disconnect(reason)

    def status(self) -> dict:
        snap = self.poller.snapshot()
        return {
            "connected": self.connected,
            "phase": self.poller.phase.value,
            "state": self.poller.state.name,
            "shots": snap.shot_count,
            "first_shot": format_ms(snap.first_shot_ms),
            "total_time": format_ms(snap.total_time_ms),
            "pending": snap.pending_ids,
            "skipped_ticks": self.poller.skipped_ticks,
            "error": describe(self.poller.last_error),
        }

    async def _status_task(self, every_s: float):
        while True:
            await asyncio.sleep(every_s)
            self.logger.write({"type": "status", "msg": "alive", "data": self.status()})


async def run(config_path: str, mode: Optional[str] = None, duration_s: Optional[float] = None,
              reset_first: bool = False) -> ShotSnapshot:
    """Connect, run one drill until ``duration_s`` elapses or the link drops."""
    cfg = load_config(config_path)
    br = TimerBridge(cfg)
    try:
        await br.start()
        if reset_first:
            await br.reset()
        await br.start_drill(mode)
        try:
            await asyncio.wait_for(br.poller.wait(), timeout=duration_s)
        except asyncio.TimeoutError:
            pass
        if isinstance(br.last_error, TransportUnavailable):
            br.logger.write({"type": "error", "msg": "drill_aborted", "data": {"err": describe(br.last_error)}})
        return br.snapshot()
    finally:
        await br.stop()
