"""
Mock deployment generator.

Produces a fake but believable set of pods and containers with drifting
CPU and memory load, so the dashboard can be developed without a cluster.
Pods occasionally get rescheduled under a new name, and a freshly started
pod has no published metrics for its first couple of ticks, the same way
metrics-server behaves.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

MIB = 1024 * 1024

# (namespace, deployment, [(container, cpu_limit, memory_limit_mib, base_cpu, base_memory_mib)])
_DEPLOYMENTS = [
    ("default", "frontend", [("frontend", 1.0, 512, 0.18, 220), ("nginx", 0.25, 128, 0.03, 40)]),
    ("default", "gitserver", [("gitserver", 4.0, 8192, 1.2, 3900)]),
    ("default", "searcher", [("searcher", 2.0, 2048, 0.6, 900), ("jaeger-agent", None, None, 0.01, 18)]),
    ("default", "worker", [("worker", 2.0, 4096, 0.45, 1400)]),
    ("monitoring", "prometheus", [("prometheus", 2.0, 6144, 0.35, 5200)]),
    ("monitoring", "grafana", [("grafana", 0.5, 512, 0.02, 95)]),
]

# Ticks after a pod starts before the metrics pipeline has a sample for it
METRICS_DELAY_TICKS = 2


@dataclass
class MockContainer:
    name: str
    cpu_limit: Optional[float]
    memory_limit: Optional[int]
    base_cpu: float
    base_memory: int


@dataclass
class MockPod:
    namespace: str
    name: str
    deployment: str
    containers: List[MockContainer]
    started_tick: int


class MockDeployment:

    def __init__(self, seed: int = 42, churn_rate: float = 0.05):
        self._seed = seed
        self._rng = random.Random(seed)
        self._churn_rate = churn_rate
        self._tick = 0
        self._pods: Dict[Tuple[str, str], MockPod] = {}

        for namespace, deployment, containers in _DEPLOYMENTS:
            self._spawn(namespace, deployment, containers, started_tick=-METRICS_DELAY_TICKS)

    @property
    def tick(self) -> int:
        return self._tick

    def _spawn(self, namespace: str, deployment: str, containers, started_tick: int) -> MockPod:
        suffix = "".join(self._rng.choice("bcdfghjklmnpqrstvwxz2456789") for _ in range(5))
        pod = MockPod(
            namespace=namespace,
            name=f"{deployment}-{suffix}",
            deployment=deployment,
            containers=[
                MockContainer(
                    name=name,
                    cpu_limit=cpu_limit,
                    memory_limit=mem_limit * MIB if mem_limit else None,
                    base_cpu=base_cpu,
                    base_memory=base_mem * MIB,
                )
                for name, cpu_limit, mem_limit, base_cpu, base_mem in containers
            ],
            started_tick=started_tick,
        )
        self._pods[(namespace, pod.name)] = pod
        return pod

    def advance(self):
        """Move the simulation one tick forward, maybe rescheduling a pod."""
        self._tick += 1
        if self._rng.random() < self._churn_rate:
            victim = self._rng.choice(sorted(self._pods))
            old = self._pods.pop(victim)
            spec = next(c for ns, d, c in _DEPLOYMENTS if ns == old.namespace and d == old.deployment)
            self._spawn(old.namespace, old.deployment, spec, started_tick=self._tick)

    def pods(self) -> List[MockPod]:
        return [self._pods[key] for key in sorted(self._pods)]

    def usage(self, namespace: str, pod_name: str, container: str) -> Optional[Tuple[float, int]]:
        """Current (cpu cores, memory bytes), or None if not published yet.

        Raises KeyError if the pod or container no longer exists.
        """
        pod = self._pods[(namespace, pod_name)]
        spec = next(c for c in pod.containers if c.name == container)
        if self._tick - pod.started_tick < METRICS_DELAY_TICKS:
            return None

        # Seeded per unit and tick so concurrent readers get stable numbers
        rng = random.Random(f"{self._seed}:{self._tick}:{namespace}/{pod_name}/{container}")
        wave = 1 + 0.35 * math.sin(self._tick * 0.15 + len(pod_name))
        spike = rng.uniform(1.5, 2.5) if rng.random() > 0.95 else 1.0
        cpu = max(0.001, spec.base_cpu * wave * spike + rng.gauss(0, spec.base_cpu * 0.05))
        memory = int(max(MIB, spec.base_memory * (1 + 0.1 * math.sin(self._tick * 0.05)) + rng.gauss(0, MIB * 4)))
        return cpu, memory
