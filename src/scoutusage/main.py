"""
scout entry point.

Usage:
    scout usage                          Pods and usage in a Kubernetes deployment
    scout usage --docker                 Containers and usage in a Docker deployment
    scout usage --pod <podname>          Usage for one pod
    scout usage --docker --container <name>
    scout usage --namespace <namespace>
    scout usage --spy                    Watch usage in real time
    scout usage --mock --spy             Simulated cluster, no API access needed
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import click
import httpx
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from scoutusage import __version__
from scoutusage.backend.base import Backend
from scoutusage.backend.cluster import ClusterBackend
from scoutusage.backend.container_engine import EngineBackend
from scoutusage.backend.mock_backend import MockBackend
from scoutusage.dashboard.terminal import JsonlSink, LiveSink, print_report
from scoutusage.engine.collector import DEFAULT_WORKERS, SnapshotCollector
from scoutusage.engine.watch import DEFAULT_FAILURE_THRESHOLD, DEFAULT_INTERVAL, WatchLoop
from scoutusage.errors import ScoutUsageError
from scoutusage.selector import Selector


log = logging.getLogger("scoutusage")

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
DEFAULT_KUBECONFIG = os.path.join(os.path.expanduser("~"), ".kube", "config")


def build_cluster_backend(kubeconfig: str, context: Optional[str] = None) -> ClusterBackend:
    """Load kube config and build the core + metrics API handles."""
    try:
        k8s_config.load_kube_config(config_file=kubeconfig, context=context)
    except (k8s_config.ConfigException, OSError) as e:
        raise click.ClickException(f"failed to load kube config {kubeconfig}: {e}")

    if not context:
        _, active = k8s_config.list_kube_config_contexts(config_file=kubeconfig)
        context = active["name"] if active else ""

    api = k8s_client.ApiClient()
    return ClusterBackend(k8s_client.CoreV1Api(api), k8s_client.CustomObjectsApi(api), context_name=context)


def build_engine_backend(docker_host: str, timeout: float) -> EngineBackend:
    """Point an httpx client at the Docker engine (unix socket or tcp)."""
    if docker_host.startswith("unix://"):
        transport = httpx.HTTPTransport(uds=docker_host[len("unix://"):])
        base_url = "http://docker"
    elif docker_host.startswith("tcp://"):
        transport = None
        base_url = "http://" + docker_host[len("tcp://"):]
    elif docker_host.startswith(("http://", "https://")):
        transport = None
        base_url = docker_host
    else:
        raise click.ClickException(f"unsupported docker host: {docker_host}")

    client = httpx.Client(base_url=base_url, transport=transport, timeout=timeout)
    return EngineBackend(client, host=docker_host)


@click.group()
@click.version_option(version=__version__, prog_name="scout")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging")
def cli(verbose: bool):
    """scout - resource checks for Kubernetes and Docker deployments."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@cli.command()
@click.option("--namespace", default="", help="(optional) Kubernetes namespace to use")
@click.option("--pod", default="", help="(optional) a single pod")
@click.option("--container", default="",
              help="(optional) a single container; on a cluster it needs --pod, add --docker for a Docker container")
@click.option("--docker", is_flag=True, default=False, help="Docker deployment instead of Kubernetes")
@click.option("--mock", is_flag=True, default=False, help="Use a simulated cluster")
@click.option("--spy", is_flag=True, default=False, help="See resource usage in real time")
@click.option("--interval", default=DEFAULT_INTERVAL, type=click.FloatRange(min=0.1),
              help="Refresh interval in seconds for --spy")
@click.option("--workers", default=DEFAULT_WORKERS, type=click.IntRange(min=1),
              help="Concurrent per-unit fetches")
@click.option("--failure-threshold", default=DEFAULT_FAILURE_THRESHOLD, type=click.IntRange(min=1),
              help="Consecutive failed polls before --spy gives up")
@click.option("--output", type=click.Choice(["tui", "jsonl"]), default="tui",
              help="Output mode: tui (Rich table) or jsonl (one JSON line per snapshot)")
@click.option("--kubeconfig", envvar="KUBECONFIG", default=DEFAULT_KUBECONFIG, show_default=True,
              help="Path to the kubeconfig file")
@click.option("--context", default=None, help="(optional) kubeconfig context to use")
@click.option("--docker-host", envvar="DOCKER_HOST", default=DEFAULT_DOCKER_HOST, show_default=True,
              help="Docker engine address")
@click.option("--timeout", default=10.0, help="Per-request timeout for the Docker engine, in seconds")
def usage(namespace: str, pod: str, container: str, docker: bool, mock: bool, spy: bool,
          interval: float, workers: int, failure_threshold: int, output: str,
          kubeconfig: str, context: str, docker_host: str, timeout: float):
    """Track CPU and memory usage per container."""
    if docker and mock:
        raise click.UsageError("--docker and --mock can't be combined")

    selector = Selector(namespace=namespace, group_name=pod, unit_name=container)

    if mock:
        backend: Backend = MockBackend()
    elif docker:
        backend = build_engine_backend(docker_host, timeout)
    else:
        backend = build_cluster_backend(kubeconfig, context)

    collector = SnapshotCollector(max_workers=workers)
    try:
        if spy:
            _run_watch(backend, selector, collector, interval, failure_threshold, output)
        else:
            snapshot = collector.collect(backend, selector)
            if output == "jsonl":
                JsonlSink(backend.name()).on_snapshot(snapshot, None)
            else:
                print_report(snapshot, backend.name())
    except ScoutUsageError as e:
        raise click.ClickException(str(e))
    finally:
        backend.close()


def _run_watch(backend: Backend, selector: Selector, collector: SnapshotCollector,
               interval: float, failure_threshold: int, output: str):
    def loop(sink):
        return WatchLoop(
            backend,
            selector,
            sink,
            interval=interval,
            collector=collector,
            failure_threshold=failure_threshold,
        )

    try:
        if output == "jsonl":
            loop(JsonlSink(backend.name())).run()
        else:
            with LiveSink(backend.name(), failure_threshold) as sink:
                loop(sink).run()
            click.echo(f"Stopped after {sink.snapshots} snapshots.")
    except KeyboardInterrupt:
        log.debug("Interrupted")


if __name__ == "__main__":
    cli()
