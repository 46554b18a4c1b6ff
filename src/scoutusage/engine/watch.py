"""
Live watch ("spy") mode: poll, diff against the last good Snapshot, hand
both to a sink, sleep, repeat.

    IDLE -> POLLING -> EMITTING -> SLEEPING -> POLLING -> ... -> STOPPED

A failed list call is passed to the sink and retried on the next tick.
Only `failure_threshold` failures in a row stop the loop. The sleep is an
Event wait, so stop() cuts it short instead of waiting for it to expire.
Sink calls are synchronous: a slow sink delays the next poll, and polls
never overlap.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from enum import Enum
from typing import Optional

from scoutusage.backend.base import Backend
from scoutusage.engine.collector import DEFAULT_WORKERS, SnapshotCollector
from scoutusage.engine.diff import Diff, diff_snapshots
from scoutusage.errors import BackendUnavailable, CollectionCancelled, WatchAborted
from scoutusage.selector import Selector
from scoutusage.usage import Snapshot

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0
DEFAULT_FAILURE_THRESHOLD = 5


class WatchState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    EMITTING = "emitting"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


class UsageSink(ABC):
    """Anything that consumes watch events: a terminal renderer, a JSON writer, a test recorder."""

    @abstractmethod
    def on_snapshot(self, snapshot: Snapshot, diff: Optional[Diff]) -> None:
        """A successful poll. `diff` is None on the first one."""
        ...

    @abstractmethod
    def on_error(self, error: BackendUnavailable, consecutive_failures: int) -> None:
        """A poll whose list call failed. The loop keeps going unless the threshold is hit."""
        ...


class WatchLoop:

    def __init__(
        self,
        backend: Backend,
        selector: Selector,
        sink: UsageSink,
        interval: float = DEFAULT_INTERVAL,
        collector: Optional[SnapshotCollector] = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        max_cycles: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ):
        if interval < 0:
            raise ValueError(f"interval must not be negative, got {interval}")
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be at least 1, got {failure_threshold}")

        self._backend = backend
        self._selector = selector
        self._sink = sink
        self._interval = interval
        self._collector = collector or SnapshotCollector()
        self._failure_threshold = failure_threshold
        self._max_cycles = max_cycles
        self._cancel = cancel or threading.Event()

        self._state = WatchState.IDLE
        self._cycles = 0
        self._consecutive_failures = 0
        self._baseline: Optional[Snapshot] = None

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def stop(self):
        """Ask the loop to stop. Safe to call from any thread, including a sink."""
        self._cancel.set()

    def run(self) -> None:
        """Run until stopped or max_cycles is reached.

        Raises WatchAborted after `failure_threshold` consecutive failed polls.
        """
        if self._state != WatchState.IDLE:
            raise RuntimeError(f"watch loop already {self._state.value}")

        log.info(
            "Starting watch: source=%s, interval=%.1fs, selector=%s",
            self._backend.name(), self._interval, self._selector.describe(),
        )
        try:
            while self._should_poll():
                self._cycles += 1
                self._state = WatchState.POLLING
                try:
                    snapshot = self._collector.collect(self._backend, self._selector, cancel=self._cancel)
                except CollectionCancelled:
                    log.debug("Poll cancelled mid-flight")
                    break
                except BackendUnavailable as e:
                    self._record_failure(e)
                    self._sleep()
                    continue

                if self._cancel.is_set():
                    log.debug("Discarding snapshot finished after cancellation")
                    break

                self._consecutive_failures = 0
                self._emit(snapshot)
                self._sleep()
        finally:
            self._state = WatchState.STOPPED
            log.info("Watch stopped after %d cycles", self._cycles)

    def _should_poll(self) -> bool:
        if self._cancel.is_set():
            return False
        return self._max_cycles is None or self._cycles < self._max_cycles

    def _record_failure(self, error: BackendUnavailable):
        self._consecutive_failures += 1
        log.warning(
            "Poll failed (attempt %d/%d): %s",
            self._consecutive_failures, self._failure_threshold, error,
        )
        self._state = WatchState.EMITTING
        self._sink.on_error(error, self._consecutive_failures)

        if self._consecutive_failures >= self._failure_threshold:
            log.error("Lost %s after %d failed polls, stopping", error.backend, self._consecutive_failures)
            raise WatchAborted(self._consecutive_failures, error)

    def _emit(self, snapshot: Snapshot):
        baseline = self._baseline
        if baseline is not None and snapshot.taken_at <= baseline.taken_at:
            # Keep taken_at strictly increasing even if the clock stepped back
            snapshot = dataclasses.replace(snapshot, taken_at=baseline.taken_at + timedelta(microseconds=1))

        diff = diff_snapshots(baseline, snapshot) if baseline is not None else None
        self._state = WatchState.EMITTING
        self._sink.on_snapshot(snapshot, diff)
        self._baseline = snapshot

    def _sleep(self):
        if not self._should_poll():
            return
        self._state = WatchState.SLEEPING
        self._cancel.wait(self._interval)


def watch(
    backend: Backend,
    selector: Selector,
    interval: float,
    sink: UsageSink,
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    max_workers: int = DEFAULT_WORKERS,
    cancel: Optional[threading.Event] = None,
) -> None:
    """Live entry point. Returns when cancelled; raises WatchAborted on a dead backend."""
    WatchLoop(
        backend,
        selector,
        sink,
        interval=interval,
        collector=SnapshotCollector(max_workers=max_workers),
        failure_threshold=failure_threshold,
        cancel=cancel,
    ).run()
