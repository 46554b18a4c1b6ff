"""
Change between two consecutive Snapshots, for watch mode.

Units present in both get a delta; units that appeared or disappeared
between polls are listed as added / removed so nothing drops out of
view silently.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from scoutusage.usage import Snapshot, Unit, UnitUsage


@dataclass(frozen=True)
class UnitDelta:
    unit: Unit
    cpu_delta: Optional[float]           # cores; None if either side has no sample
    memory_delta_bytes: Optional[int]
    elapsed_seconds: float

    @property
    def comparable(self) -> bool:
        return self.cpu_delta is not None


@dataclass(frozen=True)
class Diff:
    deltas: List[UnitDelta]
    added: List[Unit]
    removed: List[Unit]
    elapsed_seconds: float   # between the two snapshots

    def get(self, unit_id: str) -> Optional[UnitDelta]:
        for d in self.deltas:
            if d.unit.id == unit_id:
                return d
        return None

    def is_added(self, unit_id: str) -> bool:
        return any(u.id == unit_id for u in self.added)

    def changed(self, cpu_epsilon: float = 0.001, memory_epsilon: int = 0) -> List[UnitDelta]:
        """Deltas that moved by more than the given noise floor."""
        return [
            d for d in self.deltas
            if d.comparable and (abs(d.cpu_delta) > cpu_epsilon or abs(d.memory_delta_bytes) > memory_epsilon)
        ]


def _elapsed(before: UnitUsage, after: UnitUsage, fallback: float) -> float:
    if before.ok and after.ok:
        return (after.sample.observed_at - before.sample.observed_at).total_seconds()
    return fallback


def diff_snapshots(previous: Snapshot, current: Snapshot) -> Diff:
    """Compare two snapshots and report what changed per unit."""
    snapshot_elapsed = (current.taken_at - previous.taken_at).total_seconds()
    prev_by_id = {e.unit.id: e for e in previous}
    curr_ids = set(current.ids)

    deltas = []
    added = []
    for entry in current:
        before = prev_by_id.get(entry.unit.id)
        if before is None:
            added.append(entry.unit)
            continue

        if before.ok and entry.ok:
            cpu_delta = entry.sample.cpu_used - before.sample.cpu_used
            mem_delta = entry.sample.memory_used_bytes - before.sample.memory_used_bytes
        else:
            cpu_delta = None
            mem_delta = None

        deltas.append(UnitDelta(
            unit=entry.unit,
            cpu_delta=cpu_delta,
            memory_delta_bytes=mem_delta,
            elapsed_seconds=_elapsed(before, entry, snapshot_elapsed),
        ))

    removed = [e.unit for e in previous if e.unit.id not in curr_ids]

    return Diff(deltas=deltas, added=added, removed=removed, elapsed_seconds=snapshot_elapsed)
