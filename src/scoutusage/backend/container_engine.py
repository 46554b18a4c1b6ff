"""
Backend for a standalone Docker engine, spoken to over its HTTP API
(usually the unix socket). The caller hands us an httpx.Client that
already points at the engine.

The engine reports CPU as cumulative counters, so one sample needs two
readings: the stats endpoint includes the previous reading (precpu_stats)
when the daemon has one, and we fall back to our own last reading of the
container when it doesn't.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import httpx

from scoutusage.backend.base import Backend
from scoutusage.errors import BackendUnavailable, SampleUnavailable, UnitVanished
from scoutusage.selector import Selector
from scoutusage.usage import BackendKind, ResourceSample, Unit

log = logging.getLogger(__name__)

NANOCPUS_PER_CPU = 1_000_000_000

# The engine sends up to nanosecond precision with trailing zeros trimmed;
# datetime wants exactly microseconds
_FRACTION = re.compile(r"\.(\d+)")


def _parse_engine_time(value: Optional[str]) -> datetime:
    if not value or value.startswith("0001-"):
        return datetime.now(timezone.utc)
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _cpu_limit(host_config: dict) -> Optional[float]:
    nano = host_config.get("NanoCpus") or 0
    if nano > 0:
        return nano / NANOCPUS_PER_CPU
    quota = host_config.get("CpuQuota") or 0
    period = host_config.get("CpuPeriod") or 0
    if quota > 0 and period > 0:
        return quota / period
    return None


def _memory_used(memory_stats: dict) -> int:
    usage = memory_stats["usage"]
    stats = memory_stats.get("stats") or {}
    # Same cache accounting as `docker stats`: v2 reports inactive_file, v1 total_inactive_file
    inactive = stats.get("inactive_file", stats.get("total_inactive_file", 0))
    if inactive < usage:
        return usage - inactive
    return usage


def _listing(payload) -> list:
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise TypeError("container listing is not a list of objects")
    return payload


class EngineBackend(Backend):

    kind = BackendKind.ENGINE

    def __init__(self, client: httpx.Client, host: str = ""):
        self._client = client
        self._host = host
        # Last raw (container_total, system_total) CPU counters per container id
        self._previous: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    def list_units(self, selector: Selector) -> List[Unit]:
        params = {}
        if selector.unit_name:
            params["filters"] = json.dumps({"name": [selector.unit_name]})

        try:
            response = self._client.get("/containers/json", params=params)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise BackendUnavailable(self.name(), "list containers", e) from e

        try:
            units = [self._listed_unit(item) for item in _listing(response.json())]
        except (ValueError, KeyError, TypeError) as e:
            raise BackendUnavailable(self.name(), "list containers", e) from e

        # Drop cached CPU readings for containers that are gone
        live = {u.id for u in units}
        with self._lock:
            for uid in [k for k in self._previous if k not in live]:
                del self._previous[uid]

        log.debug("Listed %d containers (%s)", len(units), selector.describe())
        return units

    def _listed_unit(self, item: dict) -> Unit:
        names = item.get("Names") or [item["Id"][:12]]
        return Unit(id=item["Id"], name=names[0].lstrip("/"), backend_kind=self.kind)

    def fetch_usage(self, unit: Unit) -> ResourceSample:
        inspect = self._get(unit, f"/containers/{unit.id}/json")
        host_config = inspect.get("HostConfig") or {}
        stats = self._get(unit, f"/containers/{unit.id}/stats", params={"stream": "false"})

        memory_stats = stats.get("memory_stats") or {}
        if "usage" not in memory_stats:
            raise SampleUnavailable(unit.id, "no memory stats (container not running?)")

        try:
            memory_limit = host_config.get("Memory") or 0
            return ResourceSample(
                cpu_used=self._cpu_cores(unit, stats),
                memory_used_bytes=_memory_used(memory_stats),
                cpu_limit=_cpu_limit(host_config),
                memory_limit=memory_limit if memory_limit > 0 else None,
                observed_at=_parse_engine_time(stats.get("read")),
            )
        except (TypeError, ValueError) as e:
            raise SampleUnavailable(unit.id, f"malformed stats: {e}") from e

    def _get(self, unit: Unit, path: str, params: Optional[dict] = None) -> dict:
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise UnitVanished(unit.id, "container no longer exists") from e
            raise SampleUnavailable(unit.id, f"engine returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SampleUnavailable(unit.id, str(e)) from e
        try:
            payload = response.json()
        except ValueError as e:
            raise SampleUnavailable(unit.id, f"unreadable response from {path}") from e
        if not isinstance(payload, dict):
            raise SampleUnavailable(unit.id, f"unexpected response from {path}")
        return payload

    def _cpu_cores(self, unit: Unit, stats: dict) -> float:
        cpu_stats = stats.get("cpu_stats") or {}
        cpu_usage = cpu_stats.get("cpu_usage") or {}
        total = cpu_usage.get("total_usage")
        system = cpu_stats.get("system_cpu_usage")
        if total is None or system is None:
            raise SampleUnavailable(unit.id, "no CPU counters reported")

        online = cpu_stats.get("online_cpus") or len(cpu_usage.get("percpu_usage") or []) or 1

        pre = stats.get("precpu_stats") or {}
        pre_system = pre.get("system_cpu_usage")
        with self._lock:
            if pre_system:
                previous = ((pre.get("cpu_usage") or {}).get("total_usage", 0), pre_system)
            else:
                previous = self._previous.get(unit.id)
            self._previous[unit.id] = (total, system)

        if previous is None:
            raise SampleUnavailable(unit.id, "waiting for a second CPU reading")

        cpu_delta = total - previous[0]
        system_delta = system - previous[1]
        if system_delta <= 0 or cpu_delta < 0:
            return 0.0
        return cpu_delta / system_delta * online

    def name(self) -> str:
        if self._host:
            return f"Docker ({self._host})"
        return "Docker"

    def close(self):
        self._client.close()
