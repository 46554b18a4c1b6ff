"""
One full poll of a backend: list, filter, fetch every unit on a bounded
thread pool, and assemble a Snapshot.

A unit whose sample can't be read is recorded in the Snapshot with its
error; only a failed list call stops the poll. Entry order is by unit id,
so it never depends on which fetch finished first.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from scoutusage.backend.base import Backend
from scoutusage.errors import CollectionCancelled, FetchError
from scoutusage.selector import Selector
from scoutusage.usage import Snapshot, Unit, UnitUsage

log = logging.getLogger(__name__)

DEFAULT_WORKERS = 8

# How often a waiting collect() looks at the cancel flag
_CANCEL_CHECK_SECONDS = 0.1


def _dedupe(units: Iterable[Unit]) -> List[Unit]:
    seen = set()
    unique = []
    for unit in units:
        if unit.id in seen:
            log.debug("Dropping duplicate unit %s from listing", unit.id)
            continue
        seen.add(unit.id)
        unique.append(unit)
    return unique


def _fetch_one(backend: Backend, unit: Unit) -> UnitUsage:
    try:
        return UnitUsage.of_sample(unit, backend.fetch_usage(unit))
    except FetchError as e:
        log.debug("No sample for %s: %s (%s)", unit.id, type(e).__name__, e.reason)
        return UnitUsage.of_error(unit, e)


class SnapshotCollector:

    def __init__(self, max_workers: int = DEFAULT_WORKERS):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self._max_workers = max_workers

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def collect(
        self,
        backend: Backend,
        selector: Selector,
        cancel: Optional[threading.Event] = None,
    ) -> Snapshot:
        """Take one Snapshot. Raises BackendUnavailable if units can't be listed.

        If `cancel` gets set while fetches are outstanding, queued fetches are
        dropped, running ones are left to finish in the background, and
        CollectionCancelled is raised.
        """
        units = _dedupe(selector.apply(backend.list_units(selector)))
        if not units:
            log.info("Selector matched nothing on %s (%s)", backend.name(), selector.describe())
            return Snapshot(entries=(), taken_at=datetime.now(timezone.utc), selector=selector)

        results: Dict[str, UnitUsage] = {}
        executor = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(units)),
            thread_name_prefix="scoutusage-fetch",
        )
        try:
            futures = {executor.submit(_fetch_one, backend, unit): unit for unit in units}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=_CANCEL_CHECK_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    results[futures[future].id] = future.result()
                if pending and cancel is not None and cancel.is_set():
                    raise CollectionCancelled(
                        f"cancelled with {len(pending)} of {len(units)} fetches outstanding"
                    )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        entries = tuple(results[unit.id] for unit in sorted(units, key=lambda u: u.id))
        snapshot = Snapshot(entries=entries, taken_at=datetime.now(timezone.utc), selector=selector)
        log.debug(
            "Collected %d units from %s (%d failed)",
            len(snapshot), backend.name(), len(snapshot.failures),
        )
        return snapshot


def collect(backend: Backend, selector: Selector, max_workers: int = DEFAULT_WORKERS) -> Snapshot:
    """One-shot poll for static reports."""
    return SnapshotCollector(max_workers=max_workers).collect(backend, selector)
