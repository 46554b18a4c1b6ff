"""
Core data model for scoutusage.

A Unit is one monitorable container. A poll produces a Snapshot: one
UnitUsage per unit, each carrying either a ResourceSample or the error
that stopped us from getting one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Union

from scoutusage.errors import FetchError

if TYPE_CHECKING:
    from scoutusage.selector import Selector


class BackendKind(str, Enum):
    CLUSTER = "cluster"
    ENGINE = "engine"
    MOCK = "mock"


@dataclass(frozen=True)
class Unit:
    """One container, as listed by a backend. Immutable within a poll."""

    id: str
    name: str
    group_name: str = ""   # pod name; empty for engine containers
    backend_kind: BackendKind = BackendKind.CLUSTER
    namespace: str = ""

    @property
    def display_name(self) -> str:
        if self.group_name:
            return f"{self.group_name}/{self.name}"
        return self.name


def _percent(used: float, limit: Optional[float]) -> Optional[float]:
    if not limit:
        return None
    # Not capped: anything above 100 means the unit is over its limit
    return used / limit * 100


@dataclass(frozen=True)
class ResourceSample:
    cpu_used: float                      # cores (1.0 == one full CPU)
    memory_used_bytes: int
    observed_at: datetime
    cpu_limit: Optional[float] = None    # cores, None when unlimited
    memory_limit: Optional[int] = None   # bytes, None when unlimited

    @property
    def cpu_percent(self) -> Optional[float]:
        return _percent(self.cpu_used, self.cpu_limit)

    @property
    def memory_percent(self) -> Optional[float]:
        return _percent(self.memory_used_bytes, self.memory_limit)


@dataclass(frozen=True)
class UnitUsage:
    """A unit paired with exactly one of: a sample, or the fetch error.

    Use the of_sample / of_error constructors. Reading .sample on a failed
    entry re-raises the recorded error instead of handing back None.
    """

    unit: Unit
    result: Union[ResourceSample, FetchError]

    def __post_init__(self):
        if not isinstance(self.result, (ResourceSample, FetchError)):
            raise TypeError(f"result must be a ResourceSample or FetchError, got {type(self.result).__name__}")

    @classmethod
    def of_sample(cls, unit: Unit, sample: ResourceSample) -> "UnitUsage":
        return cls(unit=unit, result=sample)

    @classmethod
    def of_error(cls, unit: Unit, error: FetchError) -> "UnitUsage":
        return cls(unit=unit, result=error)

    @property
    def ok(self) -> bool:
        return isinstance(self.result, ResourceSample)

    @property
    def sample(self) -> ResourceSample:
        if isinstance(self.result, FetchError):
            raise self.result
        return self.result

    @property
    def error(self) -> Optional[FetchError]:
        return self.result if isinstance(self.result, FetchError) else None


@dataclass(frozen=True)
class Snapshot:
    """One complete poll across every selected unit."""

    entries: Tuple[UnitUsage, ...]
    taken_at: datetime
    selector: Selector

    def __post_init__(self):
        seen = set()
        for entry in self.entries:
            if entry.unit.id in seen:
                raise ValueError(f"duplicate unit id in snapshot: {entry.unit.id}")
            seen.add(entry.unit.id)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def ids(self) -> List[str]:
        return [e.unit.id for e in self.entries]

    @property
    def is_empty(self) -> bool:
        """True when the selector matched nothing. Not a failure."""
        return not self.entries

    @property
    def samples(self) -> List[UnitUsage]:
        return [e for e in self.entries if e.ok]

    @property
    def failures(self) -> List[UnitUsage]:
        return [e for e in self.entries if not e.ok]

    def get(self, unit_id: str) -> Optional[UnitUsage]:
        for entry in self.entries:
            if entry.unit.id == unit_id:
                return entry
        return None

    def totals(self) -> Tuple[float, int]:
        """Summed (cpu cores, memory bytes) over units that reported."""
        cpu = sum(e.sample.cpu_used for e in self.samples)
        mem = sum(e.sample.memory_used_bytes for e in self.samples)
        return cpu, mem

    def summary(self) -> dict:
        """Return a plain dict for display or JSON output."""
        cpu, mem = self.totals()
        units: List[Dict] = []
        for entry in self.entries:
            row = {"id": entry.unit.id, "name": entry.unit.display_name}
            if entry.ok:
                s = entry.sample
                row.update({
                    "cpu_cores": round(s.cpu_used, 4),
                    "cpu_limit": s.cpu_limit,
                    "cpu_pct": None if s.cpu_percent is None else round(s.cpu_percent, 1),
                    "memory_bytes": s.memory_used_bytes,
                    "memory_limit": s.memory_limit,
                    "memory_pct": None if s.memory_percent is None else round(s.memory_percent, 1),
                })
            else:
                row["error"] = type(entry.error).__name__
                row["reason"] = entry.error.reason
            units.append(row)

        return {
            "timestamp": self.taken_at.isoformat(),
            "unit_count": len(self.entries),
            "failed_count": len(self.failures),
            "cpu_cores_total": round(cpu, 4),
            "memory_bytes_total": mem,
            "units": units,
        }
