from __future__ import annotations
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    OK = 0x00
    ERROR = 0x01
    BUSY = 0x02
    TIMEOUT = 0x03
    BUFFER_OVERFLOW = 0x04
    PACKET_ERROR = 0x05
    COMMAND_ERROR = 0x06
    CRC_ERROR = 0x07
    DATA_SIZE_ERROR = 0x08
    UNSUPPORTED_PROTOCOL = 0x09
    ID_OUT_OF_RANGE = 0x0A
    DATA_EMPTY = 0x0B
    DATA_NOT_INTEGER = 0x0C
    BUFFER_EMPTY = 0xFF
    UNKNOWN = -1


_BY_CODE = {k.value: k for k in ErrorKind if k is not ErrorKind.UNKNOWN}

# Kinds worth re-issuing the same request for.
RETRYABLE = frozenset({ErrorKind.BUSY, ErrorKind.TIMEOUT, ErrorKind.DATA_EMPTY})

RE_ERR = re.compile(r"#ERR\s*=\s*((?:0[xX])?[0-9A-Fa-f]+)")


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    code: int
    raw: str

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE

    def __str__(self) -> str:
        return f"{self.kind.name} (0x{self.code:02X})"


def decode_error(line: str) -> Optional[ErrorInfo]:
    """Decode a ``#ERR=<code>`` line, or return None for any other line.

    The code token is hex when it carries a ``0x`` prefix or a hex letter,
    decimal otherwise ("11" is 11 = DATA_EMPTY, "0B" is 11 as well).
    """
    m = RE_ERR.search(line)
    if not m:
        return None
    raw = m.group(1)
    prefixed = raw[:2].lower() == "0x"
    digits = raw[2:] if prefixed else raw
    is_hex = prefixed or bool(re.search(r"[A-Fa-f]", digits))
    code = int(digits, 16 if is_hex else 10)
    return ErrorInfo(_BY_CODE.get(code, ErrorKind.UNKNOWN), code, raw)


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE


# ---------- exception taxonomy ----------

class TimerError(Exception):
    """Base for everything raised by the shot timer bridge."""


class TransportUnavailable(TimerError):
    """No active link to the timer (never attached, or disconnected)."""


class RequestTimeout(TimerError):
    """No matching response line arrived before the request deadline."""


class RequestCancelled(TimerError):
    """The pending request was aborted by a session stop/reset."""


class ProtocolError(TimerError):
    """The timer answered with ``#ERR=<code>``."""

    def __init__(self, info: ErrorInfo, command: str = ""):
        self.info = info
        self.command = command
        super().__init__(f"{command or 'request'} failed: {info}")

    @property
    def kind(self) -> ErrorKind:
        return self.info.kind

    @property
    def retryable(self) -> bool:
        return self.info.retryable


class MalformedResponse(TimerError):
    """A response had the expected shape but no parsable integer."""


class DuplicateValue(TimerError):
    """A shot time is already recorded under a different shot id."""


class SlotNotReserved(TimerError):
    """A shot time arrived for an id the counter has not reported yet."""


class ConfigError(TimerError, ValueError):
    pass
