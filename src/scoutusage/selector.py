"""
Scoping filter for a poll.

A Selector narrows the unit list before anything is fetched, so units
outside it never cost an API call. Combinations that can't match anything
are not errors; they just produce an empty Snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List

from scoutusage.usage import BackendKind, Unit


@dataclass(frozen=True)
class Selector:
    namespace: str = ""    # cluster only; empty = all namespaces
    group_name: str = ""   # pod; empty = all
    unit_name: str = ""    # container; empty = all

    def matches(self, unit: Unit) -> bool:
        if self.namespace and unit.backend_kind != BackendKind.ENGINE and unit.namespace != self.namespace:
            return False

        if self.group_name and unit.group_name != self.group_name:
            return False

        if self.unit_name:
            # A container name only means something inside a pod on the cluster side
            if unit.backend_kind != BackendKind.ENGINE and not self.group_name:
                return False
            if unit.name != self.unit_name:
                return False

        return True

    def apply(self, units: Iterable[Unit]) -> List[Unit]:
        return [u for u in units if self.matches(u)]

    def describe(self) -> str:
        parts = []
        if self.namespace:
            parts.append(f"namespace={self.namespace}")
        if self.group_name:
            parts.append(f"pod={self.group_name}")
        if self.unit_name:
            parts.append(f"container={self.unit_name}")
        return ", ".join(parts) if parts else "all units"
