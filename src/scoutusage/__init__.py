"""scoutusage - CPU and memory usage for Kubernetes and Docker workloads."""

__version__ = "0.3.0"
