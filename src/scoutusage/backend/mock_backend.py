"""
Backend that reads from the mock deployment generator.
Used for local development on machines without a cluster.
"""

from datetime import datetime, timezone
from typing import List

from scoutusage.backend.base import Backend
from scoutusage.errors import SampleUnavailable, UnitVanished
from scoutusage.mock.generator import MockDeployment
from scoutusage.selector import Selector
from scoutusage.usage import BackendKind, ResourceSample, Unit


class MockBackend(Backend):
    """Wraps the mock generator as a standard backend. Each list advances one tick."""

    kind = BackendKind.MOCK

    def __init__(self, seed: int = 42, churn_rate: float = 0.05):
        self._deployment = MockDeployment(seed=seed, churn_rate=churn_rate)
        self._limits = {}

    def list_units(self, selector: Selector) -> List[Unit]:
        self._deployment.advance()
        units = []
        limits = {}
        for pod in self._deployment.pods():
            if selector.namespace and pod.namespace != selector.namespace:
                continue
            for c in pod.containers:
                unit = Unit(
                    id=f"{pod.namespace}/{pod.name}/{c.name}",
                    name=c.name,
                    group_name=pod.name,
                    backend_kind=self.kind,
                    namespace=pod.namespace,
                )
                limits[unit.id] = (c.cpu_limit, c.memory_limit)
                units.append(unit)
        self._limits = limits
        return units

    def fetch_usage(self, unit: Unit) -> ResourceSample:
        try:
            reading = self._deployment.usage(unit.namespace, unit.group_name, unit.name)
        except (KeyError, StopIteration) as e:
            raise UnitVanished(unit.id, "pod was rescheduled") from e
        if reading is None:
            raise SampleUnavailable(unit.id, "metrics not published yet")

        cpu, memory = reading
        cpu_limit, memory_limit = self._limits.get(unit.id, (None, None))
        return ResourceSample(
            cpu_used=cpu,
            memory_used_bytes=memory,
            cpu_limit=cpu_limit,
            memory_limit=memory_limit,
            observed_at=datetime.now(timezone.utc),
        )

    def name(self) -> str:
        return "Mock cluster (simulated deployment)"
