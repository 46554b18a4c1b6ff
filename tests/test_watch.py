"""Tests for the watch loop: diffs, failure threshold, and cancellation."""

import threading
import time
from datetime import datetime, timezone

import pytest

from scoutusage.backend.base import Backend
from scoutusage.engine.collector import SnapshotCollector
from scoutusage.engine.watch import UsageSink, WatchLoop, WatchState, watch
from scoutusage.errors import BackendUnavailable, WatchAborted
from scoutusage.selector import Selector
from scoutusage.usage import BackendKind, ResourceSample, Snapshot, Unit

MIB = 1024 * 1024


def _unit(pod: str) -> Unit:
    return Unit(id=f"default/{pod}/main", name="main", group_name=pod,
                backend_kind=BackendKind.CLUSTER, namespace="default")


class RecordingSink(UsageSink):

    def __init__(self, on_snapshot=None):
        self.events = []
        self._hook = on_snapshot

    def on_snapshot(self, snapshot, diff):
        self.events.append(("snapshot", snapshot, diff))
        if self._hook:
            self._hook()

    def on_error(self, error, consecutive_failures):
        self.events.append(("error", error, consecutive_failures))

    @property
    def snapshots(self):
        return [e[1] for e in self.events if e[0] == "snapshot"]

    @property
    def errors(self):
        return [e for e in self.events if e[0] == "error"]


class ScriptedBackend(Backend):
    """Each list call takes the next step from the script: a list of pod names or an exception."""

    kind = BackendKind.CLUSTER

    def __init__(self, script, cpu_by_cycle=None, on_list=None):
        self._script = list(script)
        self._cpu_by_cycle = cpu_by_cycle or {}
        self._on_list = on_list
        self.list_calls = 0

    def list_units(self, selector):
        step = self._script[min(self.list_calls, len(self._script) - 1)]
        self.list_calls += 1
        if self._on_list:
            self._on_list()
        if isinstance(step, Exception):
            raise step
        return [_unit(pod) for pod in step]

    def fetch_usage(self, unit):
        cpu = self._cpu_by_cycle.get(self.list_calls, 0.1)
        return ResourceSample(cpu_used=cpu, memory_used_bytes=50 * MIB, observed_at=datetime.now(timezone.utc))

    def name(self):
        return "scripted"


def _down():
    return BackendUnavailable("scripted", "list pods", ConnectionRefusedError("refused"))


def test_first_cycle_has_no_diff_then_diffs():
    backend = ScriptedBackend([["a"]], cpu_by_cycle={1: 0.2, 2: 0.3})
    sink = RecordingSink()

    loop = WatchLoop(backend, Selector(), sink, interval=0, max_cycles=2)
    loop.run()

    assert [e[0] for e in sink.events] == ["snapshot", "snapshot"]
    assert sink.events[0][2] is None
    diff = sink.events[1][2]
    assert diff.get("default/a/main").cpu_delta == pytest.approx(0.1)
    assert loop.state == WatchState.STOPPED
    assert loop.cycles == 2


def test_added_and_removed_between_polls():
    backend = ScriptedBackend([["a", "b"], ["b", "c"]])
    sink = RecordingSink()

    WatchLoop(backend, Selector(), sink, interval=0, max_cycles=2).run()

    diff = sink.events[1][2]
    assert [u.id for u in diff.added] == ["default/c/main"]
    assert [u.id for u in diff.removed] == ["default/a/main"]


def test_threshold_failures_stop_the_loop():
    backend = ScriptedBackend([_down()])
    sink = RecordingSink()
    loop = WatchLoop(backend, Selector(), sink, interval=0, failure_threshold=3)

    with pytest.raises(WatchAborted) as exc:
        loop.run()

    assert exc.value.failures == 3
    assert exc.value.last_error.call == "list pods"
    assert "3 consecutive failures" in str(exc.value)
    assert [e[2] for e in sink.errors] == [1, 2, 3]
    assert backend.list_calls == 3
    assert loop.state == WatchState.STOPPED


def test_success_resets_failure_count():
    # threshold - 1 failures, a success, then threshold - 1 again: never aborts
    backend = ScriptedBackend([_down(), _down(), ["a"], _down(), _down(), ["a"]])
    sink = RecordingSink()
    loop = WatchLoop(backend, Selector(), sink, interval=0, failure_threshold=3, max_cycles=6)

    loop.run()

    assert [e[2] for e in sink.errors] == [1, 2, 1, 2]
    assert len(sink.snapshots) == 2
    assert loop.consecutive_failures == 0
    # The diff bridges the failed polls back to the last good snapshot
    assert sink.events[-1][2] is not None


def test_cancel_during_sleep_stops_promptly():
    backend = ScriptedBackend([["a"]])
    sink = RecordingSink()
    loop = WatchLoop(backend, Selector(), sink, interval=30)
    threading.Timer(0.1, loop.stop).start()

    started = time.monotonic()
    loop.run()

    assert time.monotonic() - started < 5
    assert backend.list_calls == 1
    assert loop.state == WatchState.STOPPED


def test_stop_from_sink_prevents_next_poll():
    backend = ScriptedBackend([["a"]])
    holder = {}
    sink = RecordingSink(on_snapshot=lambda: holder["loop"].stop())
    loop = WatchLoop(backend, Selector(), sink, interval=0)
    holder["loop"] = loop

    loop.run()

    assert backend.list_calls == 1
    assert len(sink.snapshots) == 1


def test_snapshot_finished_after_cancel_is_discarded():
    cancel = threading.Event()
    backend = ScriptedBackend([["a"]], on_list=cancel.set)
    sink = RecordingSink()

    WatchLoop(backend, Selector(), sink, interval=0, cancel=cancel).run()

    assert sink.events == []


class FrozenClockCollector(SnapshotCollector):
    """Stamps every snapshot with the same time."""

    def collect(self, backend, selector, cancel=None):
        snap = super().collect(backend, selector, cancel)
        return Snapshot(entries=snap.entries, taken_at=datetime(2026, 1, 1, tzinfo=timezone.utc), selector=selector)


def test_taken_at_strictly_increases():
    backend = ScriptedBackend([["a"]])
    sink = RecordingSink()

    WatchLoop(backend, Selector(), sink, interval=0, collector=FrozenClockCollector(), max_cycles=3).run()

    stamps = [s.taken_at for s in sink.snapshots]
    assert stamps[0] < stamps[1] < stamps[2]


def test_loop_runs_once():
    loop = WatchLoop(ScriptedBackend([["a"]]), Selector(), RecordingSink(), interval=0, max_cycles=1)
    loop.run()
    with pytest.raises(RuntimeError):
        loop.run()


def test_watch_returns_immediately_when_already_cancelled():
    backend = ScriptedBackend([["a"]])
    cancel = threading.Event()
    cancel.set()

    watch(backend, Selector(), interval=1, sink=RecordingSink(), cancel=cancel)

    assert backend.list_calls == 0


def test_invalid_arguments():
    with pytest.raises(ValueError):
        WatchLoop(ScriptedBackend([["a"]]), Selector(), RecordingSink(), failure_threshold=0)
    with pytest.raises(ValueError):
        WatchLoop(ScriptedBackend([["a"]]), Selector(), RecordingSink(), interval=-1)
