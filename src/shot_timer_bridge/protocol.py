from __future__ import annotations
import re
from typing import Callable

from .errors import RE_ERR, MalformedResponse

# HM-10 style transparent UART service/characteristic
HM10_SERVICE = "0000ffe0-0000-1000-8000-00805f9b34fb"
HM10_CHAR = "0000ffe1-0000-1000-8000-00805f9b34fb"

TERMINATOR = "\r"

# Queries
CMD_STATE = "#G_STATE"
CMD_SNUM = "#G_SNUM"
CMD_STIME = "#G_STIME"
# Settings / actions
CMD_TMIN = "#S_TMIN"
CMD_TMAX = "#S_TMAX"
CMD_START = "#E_STARTT"
CMD_STANDBY = "#S_STB"
CMD_READY = "#S_GRD"

RE_STATE = re.compile(r"(?:#G_)?STATE\s*=\s*([^\s,;]*)", re.IGNORECASE)
RE_SNUM = re.compile(r"(?:#G_)?SNUM\s*=\s*([^\s,;]*)", re.IGNORECASE)
RE_STIME = re.compile(r"(?:#G_)?STIME\s*=\s*([^\s,;]*)", re.IGNORECASE)
RE_START_ACK = re.compile(r"E_STARTT.*OK", re.IGNORECASE)

Predicate = Callable[[str], bool]


def terminate(text: str) -> str:
    return text if text.endswith(TERMINATOR) else text + TERMINATOR


def cmd_shot_time(dev_id: int) -> str:
    return f"{CMD_STIME}={int(dev_id)}"


def cmd_tmin(ms: int) -> str:
    return f"{CMD_TMIN}={int(ms)}"


def cmd_tmax(ms: int) -> str:
    return f"{CMD_TMAX}={int(ms)}"


def is_error_line(line: str) -> bool:
    return RE_ERR.search(line) is not None


def matches(pattern: "re.Pattern[str]", *, or_error: bool = True) -> Predicate:
    """Predicate accepting lines that match ``pattern`` (or any ``#ERR=`` line)."""
    if or_error:
        return lambda line: pattern.search(line) is not None or is_error_line(line)
    return lambda line: pattern.search(line) is not None


def parse_int(pattern: "re.Pattern[str]", line: str) -> int:
    m = pattern.search(line)
    if not m:
        raise MalformedResponse(f"expected {pattern.pattern!r}, got {line!r}")
    try:
        return int(m.group(1))
    except ValueError as e:
        raise MalformedResponse(f"non-integer value in {line!r}") from e


def ui_to_device_id(shot_id: int) -> int:
    """Slots are numbered from 1; the timer numbers shots from 0."""
    return shot_id - 1
