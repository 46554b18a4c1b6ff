"""Terminal output using Rich: the one-shot usage table, the live watch view, and JSONL."""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional, TextIO

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from scoutusage import __version__
from scoutusage.engine.diff import Diff
from scoutusage.engine.watch import UsageSink
from scoutusage.errors import BackendUnavailable
from scoutusage.usage import Snapshot, UnitUsage

log = logging.getLogger(__name__)

# Ignore CPU moves smaller than this (cores) when drawing trend arrows
TREND_CPU_EPSILON = 0.005
# ...and memory moves smaller than this (bytes)
TREND_MEMORY_EPSILON = 1024 * 1024


def _color_for_percent(value: Optional[float]) -> str:
    if value is None:
        return "dim"
    if value < 50:
        return "green"
    elif value < 80:
        return "yellow"
    return "red"


def format_cores(cores: Optional[float]) -> str:
    if cores is None:
        return "-"
    if cores < 1:
        return f"{cores * 1000:.0f}m"
    return f"{cores:.2f}"


def format_bytes(value: Optional[int]) -> str:
    if value is None:
        return "-"
    for unit, size in (("Gi", 1024 ** 3), ("Mi", 1024 ** 2), ("Ki", 1024)):
        if abs(value) >= size:
            return f"{value / size:.1f}{unit}"
    return f"{value}B"


def _format_percent(value: Optional[float]) -> str:
    if value is None:
        return "[dim]-[/dim]"
    color = _color_for_percent(value)
    # Over-limit values are shown as-is, never capped at 100
    marker = " !" if value > 100 else ""
    return f"[{color}]{value:.1f}%{marker}[/{color}]"


def _trend_arrow(delta: Optional[float], epsilon: float) -> str:
    """Colored ^ or v. Usage going up is drawn red, going down green."""
    if delta is None:
        return ""
    if abs(delta) <= epsilon:
        return "[dim]-[/dim]"
    if delta > 0:
        return "[red]^[/red]"
    return "[green]v[/green]"


def _row(entry: UnitUsage, diff: Optional[Diff]) -> list:
    unit = entry.unit
    label = unit.display_name
    if diff is not None and diff.is_added(unit.id):
        label = f"[bold green]+[/bold green] {label}"

    if not entry.ok:
        error = entry.error
        return [
            unit.namespace or "-",
            label,
            f"[red]{type(error).__name__}[/red]",
            "", "", "", "", "",
            f"[dim]{error.reason}[/dim]",
        ]

    s = entry.sample
    delta = diff.get(unit.id) if diff is not None else None
    cpu_trend = _trend_arrow(delta.cpu_delta if delta else None, TREND_CPU_EPSILON)
    mem_trend = _trend_arrow(delta.memory_delta_bytes if delta else None, TREND_MEMORY_EPSILON)

    return [
        unit.namespace or "-",
        label,
        f"{format_cores(s.cpu_used)} {cpu_trend}".rstrip(),
        format_cores(s.cpu_limit),
        _format_percent(s.cpu_percent),
        f"{format_bytes(s.memory_used_bytes)} {mem_trend}".rstrip(),
        format_bytes(s.memory_limit),
        _format_percent(s.memory_percent),
        "",
    ]


def build_table(snapshot: Snapshot, diff: Optional[Diff] = None) -> Table:
    """One row per unit: usage, limit and utilization for CPU and memory."""
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Namespace", style="dim")
    table.add_column("Unit")
    table.add_column("CPU", justify="right")
    table.add_column("CPU limit", justify="right", style="dim")
    table.add_column("CPU %", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Mem limit", justify="right", style="dim")
    table.add_column("Mem %", justify="right")
    table.add_column("Note")

    for entry in snapshot:
        table.add_row(*_row(entry, diff))

    if diff is not None and diff.removed:
        gone = ", ".join(u.display_name for u in diff.removed)
        table.caption = f"[yellow]Gone since last poll:[/yellow] {gone}"

    return table


def _header(snapshot: Snapshot, source_name: str) -> Text:
    cpu, mem = snapshot.totals()
    header = Text(f"  scout usage v{__version__}  |  {source_name}", style="bold white on blue")
    header.append(f"\n  {snapshot.taken_at.strftime('%Y-%m-%d %H:%M:%S')}  ", style="dim")
    header.append(f"  {snapshot.selector.describe()}  ", style="dim")
    header.append(
        f"  {len(snapshot)} units, {len(snapshot.failures)} without metrics  |  "
        f"CPU {format_cores(cpu)}  MEM {format_bytes(mem)}",
        style="bold",
    )
    return header


def _empty_notice(snapshot: Snapshot) -> Text:
    return Text(f"  Nothing matched ({snapshot.selector.describe()})", style="yellow")


def build_display(snapshot: Snapshot, source_name: str, diff: Optional[Diff] = None) -> Layout:
    layout = Layout()
    body = _empty_notice(snapshot) if snapshot.is_empty else build_table(snapshot, diff)

    layout.split_column(
        Layout(Panel(_header(snapshot, source_name), border_style="blue"), size=5),
        Layout(Panel(body, title="Usage", border_style="cyan"), name="body"),
        Layout(Panel(Text("  Press Ctrl+C to stop", style="dim"), border_style="dim"), size=3),
    )
    return layout


def print_report(snapshot: Snapshot, source_name: str, console: Optional[Console] = None):
    """Static one-shot report."""
    console = console or Console()
    console.print(_header(snapshot, source_name))
    if snapshot.is_empty:
        console.print(_empty_notice(snapshot))
    else:
        console.print(build_table(snapshot))


class LiveSink(UsageSink):
    """Full-screen live view. Use as a context manager around WatchLoop.run()."""

    def __init__(self, source_name: str, failure_threshold: int, console: Optional[Console] = None):
        self._source_name = source_name
        self._failure_threshold = failure_threshold
        self._console = console or Console()
        self._live = Live(console=self._console, refresh_per_second=1, screen=True)
        self.snapshots = 0

    def __enter__(self) -> "LiveSink":
        log.info("Starting live view: source=%s", self._source_name)
        self._live.__enter__()
        return self

    def __exit__(self, *exc):
        return self._live.__exit__(*exc)

    def on_snapshot(self, snapshot: Snapshot, diff: Optional[Diff]) -> None:
        self.snapshots += 1
        self._live.update(build_display(snapshot, self._source_name, diff))

    def on_error(self, error: BackendUnavailable, consecutive_failures: int) -> None:
        # Show error in the view but keep the loop going
        error_text = Text(
            f"  {error.call} failed (retry {consecutive_failures}/{self._failure_threshold}): {error}",
            style="bold red",
        )
        self._live.update(Panel(error_text, border_style="red"))


class JsonlSink(UsageSink):
    """Non-interactive output: one JSON object per poll per line.

    Meant for CI pipelines and log aggregators where a Rich TUI
    isn't available.
    """

    def __init__(self, source_name: str, stream: Optional[TextIO] = None):
        self._source_name = source_name
        self._stream = stream or sys.stdout

    def _write(self, record: dict):
        self._stream.write(json.dumps(record) + "\n")
        self._stream.flush()

    def on_snapshot(self, snapshot: Snapshot, diff: Optional[Diff]) -> None:
        record = snapshot.summary()
        record["source"] = self._source_name
        if diff is not None:
            record["added"] = [u.id for u in diff.added]
            record["removed"] = [u.id for u in diff.removed]
        self._write(record)

    def on_error(self, error: BackendUnavailable, consecutive_failures: int) -> None:
        self._write({
            "source": self._source_name,
            "error": str(error),
            "call": error.call,
            "consecutive_failures": consecutive_failures,
        })
