"""Cluster client abstraction layer.

This module provides a generic, kind-agnostic interface over a target
cluster, with a kr8s backend and an in-memory backend.

Example:
    from addon_forge.infra.k8s import Kr8sClusterClient, run_sync

    client = Kr8sClusterClient()
    obj = run_sync(client.get(identity))
"""

from .client import ClusterClient, Object
from .helpers import get_cluster_client
from .kr8s_client import Kr8sClusterClient
from .memory_client import InMemoryClusterClient
from .utils import bounded, parse_timeout, run_sync

__all__ = [
    # Client classes
    "ClusterClient",
    "Kr8sClusterClient",
    "InMemoryClusterClient",
    # Types
    "Object",
    # Utilities
    "bounded",
    "get_cluster_client",
    "parse_timeout",
    "run_sync",
]
