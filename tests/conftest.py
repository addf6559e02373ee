"""Shared fixtures for engine tests."""

from collections.abc import Callable

import pytest

from addon_forge.core.models import (
    DeploymentRequest,
    OwnerReference,
    OwnershipLabels,
    SyncMode,
)
from addon_forge.infra.k8s import InMemoryClusterClient


@pytest.fixture
def cluster() -> InMemoryClusterClient:
    """Empty in-memory cluster."""
    return InMemoryClusterClient()


@pytest.fixture
def owner() -> OwnershipLabels:
    """Ownership triple of the source used by most tests."""
    return OwnershipLabels(kind="ConfigMap", name="addons", namespace="mgmt")


@pytest.fixture
def owner_reference() -> OwnerReference:
    return OwnerReference(
        api_version="config.addon-forge.io/v1",
        kind="ClusterProfile",
        name="monitoring",
        uid="0d5c2c3e-profile",
    )


@pytest.fixture
def make_request(owner: OwnershipLabels) -> Callable[..., DeploymentRequest]:
    """Factory for deployment requests from the default source."""

    def factory(
        *manifests: str,
        sync_mode: SyncMode = SyncMode.CONTINUOUS,
        source: OwnershipLabels | None = None,
        owner_reference: OwnerReference | None = None,
    ) -> DeploymentRequest:
        src = source or owner
        return DeploymentRequest(
            source_kind=src.kind,
            source_name=src.name,
            source_namespace=src.namespace,
            target_cluster="default/workload",
            sync_mode=sync_mode,
            rendered_manifests=list(manifests),
            owner_reference=owner_reference,
        )

    return factory
