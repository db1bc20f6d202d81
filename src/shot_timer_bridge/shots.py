from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .errors import DuplicateValue, SlotNotReserved
from .logs import NdjsonLogger


def format_ms(ms: Optional[int]) -> str:
    """5123 -> '5.12 s'; unknown -> '—'."""
    if ms is None:
        return "—"
    return f"{ms / 1000:.2f} s"


@dataclass(frozen=True)
class ShotRow:
    id: int
    seq: int
    elapsed_ms: Optional[int]
    split_ms: Optional[int]
    is_false_start: bool

    @property
    def filled(self) -> bool:
        return self.elapsed_ms is not None

    @property
    def tempo_ms(self) -> Optional[int]:
        # chart value: first shot from the beep, then splits
        return self.elapsed_ms if self.seq == 1 else self.split_ms


@dataclass(frozen=True)
class ShotSnapshot:
    rows: Tuple[ShotRow, ...] = ()
    token: int = 0
    state: Optional[int] = None

    @property
    def shot_count(self) -> int:
        return len(self.rows)

    @property
    def first_shot_ms(self) -> Optional[int]:
        return self.rows[0].elapsed_ms if self.rows else None

    @property
    def total_time_ms(self) -> Optional[int]:
        return self.rows[-1].elapsed_ms if self.rows else None

    @property
    def pending_ids(self) -> List[int]:
        return [r.id for r in self.rows if not r.filled]

    @property
    def splits(self) -> List[Optional[int]]:
        return [r.split_ms for r in self.rows]

    def table(self) -> List[Tuple[str, str, str]]:
        """(#, time from beep, split) as display strings; false starts show 'FS'."""
        out = []
        for r in self.rows:
            t = "FS" if r.is_false_start else format_ms(r.elapsed_ms)
            out.append((str(r.seq), t, format_ms(r.split_ms)))
        return out


class ShotBook:
    """Sparse id -> elapsed-ms map for one drill.

    Ids are allocated densely from 1 as the shot counter advances. A slot is
    reserved (value None) on discovery and filled once its time is fetched.
    A filled value never changes for the rest of the session.
    """

    def __init__(self, logger: Optional[NdjsonLogger] = None):
        self.logger = logger or NdjsonLogger(None, "timer")
        self._slots: Dict[int, Optional[int]] = {}
        self._false_starts: Set[int] = set()
        self._count = 0

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, shot_id: int) -> bool:
        return shot_id in self._slots

    @property
    def count(self) -> int:
        return self._count

    def elapsed(self, shot_id: int) -> Optional[int]:
        return self._slots.get(shot_id)

    def is_false_start(self, shot_id: int) -> bool:
        return shot_id in self._false_starts

    def advance_count(self, new_count: int, running: bool) -> List[int]:
        """Reserve slots up to ``new_count``; returns the newly allocated ids.

        Slots allocated while the timer is not RUNNING are false starts.
        A count at or below the current one changes nothing.
        """
        if new_count <= self._count:
            return []
        added = list(range(self._count + 1, new_count + 1))
        for shot_id in added:
            self._slots[shot_id] = None
            if not running:
                self._false_starts.add(shot_id)
        self._count = new_count
        self.logger.write({"type": "event", "msg": "reserve", "data": {
            "ids": added, "false_start": not running,
            "text": f"Reserve slot for id={added[0]}..{added[-1]}" + (" [FS]" if not running else ""),
        }})
        return added

    def fill_slot(self, shot_id: int, elapsed_ms: int) -> bool:
        """Record the time for ``shot_id``.

        Returns True when the value was stored, False when the slot already
        had one. Raises SlotNotReserved for an unknown id and DuplicateValue
        if the same time is already recorded under another id.
        """
        if shot_id not in self._slots:
            raise SlotNotReserved(f"no slot for id={shot_id}")
        if self._slots[shot_id] is not None:
            return False
        for other, ms in self._slots.items():
            if ms == elapsed_ms and other != shot_id:
                raise DuplicateValue(f"Duplicate STIME ignored: id={shot_id}, ms={elapsed_ms} (already id={other})")
        self._slots[shot_id] = int(elapsed_ms)
        self.logger.write({"type": "event", "msg": "shot", "data": {"id": shot_id, "ms": int(elapsed_ms)}})
        return True

    def next_unfilled(self, limit: Optional[int] = None) -> Optional[int]:
        """Lowest reserved-but-empty id (not above ``limit`` when given)."""
        for shot_id in sorted(self._slots):
            if limit is not None and shot_id > limit:
                break
            if self._slots[shot_id] is None:
                return shot_id
        return None

    def snapshot(self, state: Optional[int] = None, token: int = 0) -> ShotSnapshot:
        rows = []
        prev_ms: Optional[int] = None
        for seq, shot_id in enumerate(sorted(self._slots), start=1):
            ms = self._slots[shot_id]
            split = None
            if ms is not None:
                if prev_ms is not None:
                    split = ms - prev_ms
                prev_ms = ms
            rows.append(ShotRow(shot_id, seq, ms, split, shot_id in self._false_starts))
        return ShotSnapshot(tuple(rows), token, state)

    def reset(self):
        self._slots.clear()
        self._false_starts.clear()
        self._count = 0
