"""
Backend for a Kubernetes cluster. Pods come from the core API, usage from
the metrics.k8s.io aggregation API (metrics-server), which already reports
instantaneous rates, so no differencing is needed here.

The API handles are built and authenticated by the caller; this module
only reads through them.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import urllib3
from kubernetes.client.exceptions import ApiException
from kubernetes.utils import parse_quantity

from scoutusage.backend.base import Backend
from scoutusage.errors import BackendUnavailable, SampleUnavailable, UnitVanished
from scoutusage.selector import Selector
from scoutusage.usage import BackendKind, ResourceSample, Unit

log = logging.getLogger(__name__)

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"

# Errors the kubernetes client surfaces when it can't get a response at all
_TRANSPORT_ERRORS = (urllib3.exceptions.HTTPError, OSError)


def _quantity(value) -> Optional[float]:
    if value is None:
        return None
    return float(parse_quantity(value))


def _limit(value) -> Optional[float]:
    try:
        return _quantity(value)
    except ValueError:
        log.debug("Ignoring unparseable limit %r", value)
        return None


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def unit_id(namespace: str, pod: str, container: str) -> str:
    return f"{namespace}/{pod}/{container}"


class ClusterBackend(Backend):

    kind = BackendKind.CLUSTER

    def __init__(self, core_api, metrics_api, context_name: str = ""):
        """core_api is a kubernetes.client.CoreV1Api, metrics_api a CustomObjectsApi."""
        self._core = core_api
        self._metrics = metrics_api
        self._context_name = context_name
        # (cpu cores, memory bytes) limits per unit id, refreshed on every list
        self._limits: Dict[str, Tuple[Optional[float], Optional[int]]] = {}
        # Pod metrics payloads fetched since the last list, keyed by (namespace, pod)
        self._pod_metrics: Dict[Tuple[str, str], dict] = {}
        self._pod_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._lock = threading.Lock()

    def list_units(self, selector: Selector) -> List[Unit]:
        field_selectors = ["status.phase=Running"]
        if selector.group_name:
            field_selectors.append(f"metadata.name={selector.group_name}")
        field_selector = ",".join(field_selectors)

        try:
            if selector.namespace:
                pods = self._core.list_namespaced_pod(selector.namespace, field_selector=field_selector)
            else:
                pods = self._core.list_pod_for_all_namespaces(field_selector=field_selector)
        except (ApiException,) + _TRANSPORT_ERRORS as e:
            raise BackendUnavailable(self.name(), "list pods", e) from e

        units = []
        limits = {}
        for pod in pods.items:
            if pod.status is not None and pod.status.phase != "Running":
                log.debug("Skipping pod %s in phase %s", pod.metadata.name, pod.status.phase)
                continue

            namespace = pod.metadata.namespace
            pod_name = pod.metadata.name
            for container in pod.spec.containers:
                uid = unit_id(namespace, pod_name, container.name)
                pod_limits = (container.resources.limits if container.resources else None) or {}
                memory_limit = _limit(pod_limits.get("memory"))
                limits[uid] = (_limit(pod_limits.get("cpu")), None if memory_limit is None else int(memory_limit))
                units.append(Unit(
                    id=uid,
                    name=container.name,
                    group_name=pod_name,
                    backend_kind=self.kind,
                    namespace=namespace,
                ))

        with self._lock:
            self._limits = limits
            self._pod_metrics = {}
            self._pod_locks = {}
        log.debug("Listed %d containers (%s)", len(units), selector.describe())
        return units

    def fetch_usage(self, unit: Unit) -> ResourceSample:
        try:
            metrics = self._fetch_pod_metrics(unit)
        except ApiException as e:
            if e.status == 404:
                if self._pod_gone(unit):
                    raise UnitVanished(unit.id, "pod no longer exists") from e
                raise SampleUnavailable(unit.id, "metrics not published yet") from e
            raise SampleUnavailable(unit.id, f"metrics API returned {e.status} {e.reason}") from e
        except _TRANSPORT_ERRORS as e:
            raise SampleUnavailable(unit.id, str(e)) from e

        for container in metrics.get("containers", []):
            if container.get("name") != unit.name:
                continue
            usage = container.get("usage", {})
            if "cpu" not in usage or "memory" not in usage:
                raise SampleUnavailable(unit.id, "incomplete usage in metrics payload")

            cpu_limit, mem_limit = self._limits.get(unit.id, (None, None))
            try:
                return ResourceSample(
                    cpu_used=_quantity(usage["cpu"]),
                    memory_used_bytes=self._memory(usage["memory"]),
                    cpu_limit=cpu_limit,
                    memory_limit=mem_limit,
                    observed_at=_parse_timestamp(metrics.get("timestamp")),
                )
            except (TypeError, ValueError) as e:
                raise SampleUnavailable(unit.id, f"malformed metrics payload: {e}") from e

        raise SampleUnavailable(unit.id, "container not in pod metrics yet")

    def _fetch_pod_metrics(self, unit: Unit) -> dict:
        """One metrics call per pod per list, however many containers ask."""
        key = (unit.namespace, unit.group_name)
        with self._lock:
            pod_lock = self._pod_locks.setdefault(key, threading.Lock())
            cache = self._pod_metrics
        with pod_lock:
            if key not in cache:
                cache[key] = self._metrics.get_namespaced_custom_object(
                    METRICS_GROUP, METRICS_VERSION, unit.namespace, "pods", unit.group_name,
                )
            return cache[key]

    def _pod_gone(self, unit: Unit) -> bool:
        try:
            self._core.read_namespaced_pod(unit.group_name, unit.namespace)
        except ApiException as e:
            return e.status == 404
        except _TRANSPORT_ERRORS:
            return False
        return False

    @staticmethod
    def _memory(value) -> Optional[int]:
        q = _quantity(value)
        return None if q is None else int(q)

    def name(self) -> str:
        if self._context_name:
            return f"Kubernetes ({self._context_name})"
        return "Kubernetes"
