"""
Base backend interface.

A backend is anything that can list units and read one usage sample per
unit. Keeping list and fetch separate lets the collector run the per-unit
fetches in parallel while the list call stays single, and keeps each
deployment's metric quirks (cumulative counters vs. ready-made rates)
out of the collector.
"""

from abc import ABC, abstractmethod
from typing import List

from scoutusage.selector import Selector
from scoutusage.usage import BackendKind, ResourceSample, Unit


class Backend(ABC):
    """Interface for all usage sources."""

    kind: BackendKind

    @abstractmethod
    def list_units(self, selector: Selector) -> List[Unit]:
        """Discover units. Raises BackendUnavailable if the call can't be made."""
        ...

    @abstractmethod
    def fetch_usage(self, unit: Unit) -> ResourceSample:
        """Read one current sample. Raises SampleUnavailable or UnitVanished."""
        ...

    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this source."""
        ...

    def close(self):
        pass
