from __future__ import annotations
import re
from typing import Optional

from . import protocol
from .correlator import Correlator
from .errors import ErrorInfo, ErrorKind, ProtocolError, RequestTimeout, decode_error
from .logs import NdjsonLogger


class TimerClient:
    """Typed commands of the timer's text protocol.

    Every query is one correlated round trip; ``#ERR=`` replies surface as
    ProtocolError, unparsable values as MalformedResponse.
    """

    def __init__(self, correlator: Correlator, *, state_timeout_ms: int = 1200, count_timeout_ms: int = 1500,
                 time_timeout_ms: int = 1500, start_ack_timeout_ms: int = 800):
        self.correlator = correlator
        self.state_timeout_ms = state_timeout_ms
        self.count_timeout_ms = count_timeout_ms
        self.time_timeout_ms = time_timeout_ms
        self.start_ack_timeout_ms = start_ack_timeout_ms

    @property
    def logger(self) -> NdjsonLogger:
        return self.correlator.logger

    async def _query(self, cmd: str, pattern: "re.Pattern[str]", timeout_ms: int) -> int:
        line = await self.correlator.send_and_await(cmd, protocol.matches(pattern), timeout_ms)
        err = decode_error(line)
        if err is not None:
            raise ProtocolError(err, cmd)
        return protocol.parse_int(pattern, line)

    async def get_state(self) -> int:
        return await self._query(protocol.CMD_STATE, protocol.RE_STATE, self.state_timeout_ms)

    async def get_shot_count(self) -> int:
        return await self._query(protocol.CMD_SNUM, protocol.RE_SNUM, self.count_timeout_ms)

    async def get_shot_time(self, shot_id: int) -> int:
        """Elapsed ms from the beep for 1-based ``shot_id``."""
        dev_id = protocol.ui_to_device_id(shot_id)
        cmd = protocol.cmd_shot_time(dev_id)
        if dev_id < 0:
            raise ProtocolError(ErrorInfo(ErrorKind.COMMAND_ERROR, ErrorKind.COMMAND_ERROR.value, "local"), cmd)
        try:
            return await self._query(cmd, protocol.RE_STIME, self.time_timeout_ms)
        except ProtocolError as e:
            self.logger.write({"type": "warn", "msg": "stime_error", "data": {
                "id": shot_id, "dev_id": dev_id, "kind": e.kind.name, "code": e.info.code,
                "text": f"ERR {e.kind.name} (0x{e.info.code:X}) on STIME id={shot_id} (devId={dev_id})",
            }})
            raise

    async def set_start_window(self, min_ms: int, max_ms: int):
        await self.correlator.send(protocol.cmd_tmin(min_ms))
        await self.correlator.send(protocol.cmd_tmax(max_ms))

    async def start_beep(self) -> bool:
        """Issue the start signal; True if the timer acknowledged it in time."""
        try:
            line = await self.correlator.send_and_await(
                protocol.CMD_START, protocol.matches(protocol.RE_START_ACK), self.start_ack_timeout_ms)
        except RequestTimeout:
            self.logger.write({"type": "info", "msg": "start_unacked", "data": {}})
            return False
        err = decode_error(line)
        if err is not None:
            raise ProtocolError(err, protocol.CMD_START)
        return True

    async def standby(self):
        await self.correlator.send(protocol.CMD_STANDBY)

    async def ready(self):
        await self.correlator.send(protocol.CMD_READY)


def describe(err: Optional[BaseException]) -> str:
    if err is None:
        return ""
    return f"{type(err).__name__}: {err}"
