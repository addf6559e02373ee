from __future__ import annotations

from cachetools.func import lru_cache  # type: ignore

from addon_forge.infra.k8s.client import ClusterClient


@lru_cache(maxsize=8)
def get_cluster_client(
    kubeconfig: str | None = None, context: str | None = None
) -> ClusterClient:
    """Get a ClusterClient for a kubeconfig and context.

    Returns:
        An instance of ClusterClient
    """
    from addon_forge.infra.k8s.kr8s_client import Kr8sClusterClient

    return Kr8sClusterClient(kubeconfig=kubeconfig, context=context)
