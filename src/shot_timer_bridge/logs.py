from __future__ import annotations
import os, json, time, pathlib, uuid
from collections import deque
from typing import Optional, IO, Iterable, List, Deque


class NdjsonLogger:
    """Structured event log for the bridge.

    Records are dicts of the form ``{"type": ..., "msg": ..., "data": {...}}``.
    Every record lands in a bounded in-memory history (newest first) that a
    UI can show as the exchange log. When a directory is given, records are
    also appended as NDJSON to ``<prefix>_YYYYMMDD_HHMMSS.ndjson``; with
    ``dual_file`` a second, unfiltered file is kept under ``debug_subdir``.
    """

    def __init__(self, directory: Optional[str], file_prefix: str, *, dual_file: bool = False,
                 debug_subdir: Optional[str] = None, history: int = 1200):
        self.dir = pathlib.Path(directory) if directory else None
        if self.dir is not None:
            self.dir.mkdir(parents=True, exist_ok=True)
        self.prefix = file_prefix
        self.dual_file = bool(dual_file)
        self.debug_subdir = debug_subdir or "debug"
        self.seq = 0
        self.history: Deque[dict] = deque(maxlen=max(1, int(history)))
        self._fh: Optional[IO[str]] = None
        self._debug_fh: Optional[IO[str]] = None
        self._path: Optional[pathlib.Path] = None
        self._debug_path: Optional[pathlib.Path] = None
        self._rot_day: Optional[str] = None
        # 'regular' keeps debug records (TX/RX traffic) out of the main file
        # unless whitelisted by msg; 'verbose' writes everything.
        self.mode: str = os.getenv("LOG_MODE", "regular")
        wl = os.getenv("LOG_VERBOSE_WHITELIST", "")
        self.verbose_whitelist = set([s.strip() for s in wl.split(",") if s.strip()])
        self.session_id: str = os.getenv("SESSION_ID") or uuid.uuid4().hex[:12]
        self.pid: int = os.getpid()
        if self.dir is not None:
            self.rotate()

    @property
    def path(self) -> Optional[pathlib.Path]:
        return self._path

    @property
    def debug_path(self) -> Optional[pathlib.Path]:
        return self._debug_path

    def rotate(self):
        self.close()
        if self.dir is None:
            return
        stamp = time.strftime("%Y%m%d_%H%M%S", time.localtime())
        self._path = self.dir / f"{self.prefix}_{stamp}.ndjson"
        self._fh = open(self._path, "a", buffering=1, encoding="utf-8")
        if self.dual_file:
            debug_dir = self.dir / self.debug_subdir
            debug_dir.mkdir(parents=True, exist_ok=True)
            self._debug_path = debug_dir / f"{self.prefix}_debug_{stamp}.ndjson"
            self._debug_fh = open(self._debug_path, "a", buffering=1, encoding="utf-8")
        self._rot_day = stamp[:8]

    def close(self):
        for fh in (self._fh, self._debug_fh):
            if fh:
                fh.close()
        self._fh = None
        self._debug_fh = None

    def _allowed_in_main(self, obj: dict) -> bool:
        if self.mode != "regular":
            return True
        if obj.get("type") != "debug":
            return True
        return obj.get("msg") in self.verbose_whitelist

    def write(self, obj: dict):
        self.seq += 1
        now = time.time()
        msec = int((now % 1.0) * 1000)
        obj.setdefault("hms", time.strftime("%H:%M:%S", time.localtime(now)) + f".{msec:03d}")
        obj.setdefault("seq", self.seq)
        obj.setdefault("schema", "v1")
        obj.setdefault("session_id", self.session_id)
        obj.setdefault("pid", self.pid)
        self.history.appendleft(obj)

        if self.dir is None:
            return
        if time.strftime("%Y%m%d") != self._rot_day:
            self.rotate()
        line = json.dumps(obj, default=str) + "\n"
        if self.dual_file and self._debug_fh:
            self._debug_fh.write(line)
        if self._fh and self._allowed_in_main(obj):
            self._fh.write(line)

    # ---------- presentation helpers ----------

    def recent(self, n: Optional[int] = None, types: Optional[Iterable[str]] = None) -> List[dict]:
        """Newest-first records, optionally filtered by ``type``."""
        wanted = set(types) if types else None
        out = [r for r in self.history if wanted is None or r.get("type") in wanted]
        return out if n is None else out[:n]

    def lines(self, n: Optional[int] = None) -> List[str]:
        return [format_record(r) for r in self.recent(n)]


def format_record(rec: dict) -> str:
    """Render a record as a short exchange-log line, e.g. ``RX: #G_STATE=2``."""
    msg = rec.get("msg", "")
    data = rec.get("data") if isinstance(rec.get("data"), dict) else {}
    if msg == "TX":
        return f"TX {data.get('cmd', '')}"
    if msg == "RX":
        return f"RX: {data.get('line', '')}"
    if data.get("text"):
        return str(data["text"])
    if data:
        extras = " ".join(f"{k}={v}" for k, v in data.items())
        return f"{msg} {extras}"
    return str(msg)
