from __future__ import annotations
import dataclasses, yaml
from dataclasses import dataclass, field
from typing import Optional, List, Any, Dict, Tuple

from .errors import ConfigError
from .protocol import HM10_CHAR, HM10_SERVICE

MODES = ("fixed", "random")


@dataclass
class BleCfg:
    adapter: str = "hci0"
    mac: Optional[str] = None
    # substring of the advertised name; with neither mac nor name the first
    # device advertising service_uuid is used
    name: Optional[str] = None
    service_uuid: str = HM10_SERVICE
    char_uuid: str = HM10_CHAR
    connect_timeout_s: float = 20.0
    scan_timeout_s: float = 12.0
    write_response: bool = False


@dataclass
class TimerCfg:
    mode: str = "fixed"
    fixed_delay_ms: int = 5000
    random_min_ms: int = 5000
    random_max_ms: int = 10000
    tick_ms: int = 500
    beep_poll_ms: int = 200
    snum_cooldown_ms: int = 400
    retry_pause_ms: int = 120
    max_fill_retries: int = 3
    state_timeout_ms: int = 1200
    count_timeout_ms: int = 1500
    time_timeout_ms: int = 1500
    start_ack_timeout_ms: int = 800
    post_start_delay_ms: int = 120
    # best-effort #S_STB/#S_GRD before each start
    reset_on_start: bool = True

    def window(self, mode: Optional[str] = None) -> Tuple[int, int]:
        """(TMIN, TMAX) in ms for ``mode`` (defaults to the configured one)."""
        m = mode or self.mode
        if m == "fixed":
            return self.fixed_delay_ms, self.fixed_delay_ms
        if m == "random":
            return self.random_min_ms, self.random_max_ms
        raise ConfigError(f"unknown timer mode {m!r}; expected one of {MODES}")


@dataclass
class LoggingCfg:
    dir: Optional[str] = None
    file_prefix: str = "timer"
    # 'regular' keeps TX/RX debug traffic out of the main file; 'verbose' writes everything
    mode: str = "regular"
    verbose_whitelist: Optional[List[str]] = None
    dual_file: bool = True
    debug_subdir: Optional[str] = "debug"
    # in-memory exchange log entries kept for display
    history: int = 1200


@dataclass
class AppCfg:
    ble: BleCfg = field(default_factory=BleCfg)
    timer: TimerCfg = field(default_factory=TimerCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


def _as_float(d, key, default):
    v = d.get(key, default)
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def _as_int(d, key, default):
    v = d.get(key, default)
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _as_bool(d, key, default):
    v = d.get(key, default)
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _as_str(d, key, default):
    v = d.get(key, default)
    if v is None or isinstance(v, str):
        return v
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    raise ConfigError(f"{key} must be a string, got {type(v).__name__}")


def _as_str_list(d, key):
    v = d.get(key)
    if v is None:
        return None
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    if isinstance(v, list) and all(isinstance(s, str) for s in v):
        return list(v)
    raise ConfigError(f"{key} must be a list of strings")


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = raw.get(name)
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ConfigError(f"{name} must be a mapping, got {type(v).__name__}")
    return v


def _known(cls, raw: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = set(raw) - names
    if unknown:
        raise ConfigError(f"unknown {cls.__name__} keys: {sorted(unknown, key=str)}")
    return dict(raw)


def build_config(raw: Optional[Dict[str, Any]]) -> AppCfg:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"config root must be a mapping, got {type(raw).__name__}")
    ble_raw = _known(BleCfg, _section(raw, "ble"))
    for key in ("adapter", "mac", "name", "service_uuid", "char_uuid"):
        ble_raw[key] = _as_str(ble_raw, key, getattr(BleCfg, key))
    if not ble_raw["adapter"] or not ble_raw["service_uuid"] or not ble_raw["char_uuid"]:
        raise ConfigError("ble.adapter, ble.service_uuid and ble.char_uuid must not be empty")
    ble_raw["connect_timeout_s"] = _as_float(ble_raw, "connect_timeout_s", BleCfg.connect_timeout_s)
    ble_raw["scan_timeout_s"] = _as_float(ble_raw, "scan_timeout_s", BleCfg.scan_timeout_s)
    ble_raw["write_response"] = _as_bool(ble_raw, "write_response", BleCfg.write_response)
    ble = BleCfg(**ble_raw)

    # Coerce numeric fields so quoted YAML/ENV values still work
    t_raw = _known(TimerCfg, _section(raw, "timer"))
    defaults = TimerCfg()
    kw: Dict[str, Any] = {"mode": str(t_raw.get("mode", defaults.mode)).lower()}
    for f in dataclasses.fields(TimerCfg):
        if f.name == "mode":
            continue
        default = getattr(defaults, f.name)
        if isinstance(default, bool):
            kw[f.name] = _as_bool(t_raw, f.name, default)
        else:
            kw[f.name] = _as_int(t_raw, f.name, default)
    timer = TimerCfg(**kw)
    if timer.mode not in MODES:
        raise ConfigError(f"timer.mode must be one of {MODES}, got {timer.mode!r}")
    if timer.random_min_ms > timer.random_max_ms:
        raise ConfigError("timer.random_min_ms must not exceed timer.random_max_ms")
    if timer.max_fill_retries < 1:
        raise ConfigError("timer.max_fill_retries must be at least 1")

    log_raw = _known(LoggingCfg, _section(raw, "logging"))
    for key in ("dir", "file_prefix", "mode", "debug_subdir"):
        log_raw[key] = _as_str(log_raw, key, getattr(LoggingCfg, key))
    for key in ("file_prefix", "mode"):
        log_raw[key] = log_raw[key] or getattr(LoggingCfg, key)
    log_raw["verbose_whitelist"] = _as_str_list(log_raw, "verbose_whitelist")
    log_raw["dual_file"] = _as_bool(log_raw, "dual_file", LoggingCfg.dual_file)
    log_raw["history"] = _as_int(log_raw, "history", LoggingCfg.history)
    log = LoggingCfg(**log_raw)
    return AppCfg(ble=ble, timer=timer, logging=log)


def load_config(path: str) -> AppCfg:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    return build_config(raw)
