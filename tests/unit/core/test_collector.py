"""Tests for the stale resource collector."""

import pytest

from addon_forge.core.collector import StaleResourceCollector
from addon_forge.core.errors import PermanentAPIError
from addon_forge.core.models import GroupVersionKind, OwnershipLabels, ResourceIdentity
from addon_forge.infra.k8s import InMemoryClusterClient

CLUSTER_ROLE_GVK = GroupVersionKind(
    group="rbac.authorization.k8s.io", version="v1", kind="ClusterRole"
)
CONFIG_MAP_GVK = GroupVersionKind(version="v1", kind="ConfigMap")

ROLE_ID = ResourceIdentity(
    group="rbac.authorization.k8s.io", version="v1", kind="ClusterRole", name="pod-reader"
)


def cluster_role(name: str, labels: dict[str, str] | None = None) -> dict:
    metadata: dict = {"name": name}
    if labels is not None:
        metadata["labels"] = labels
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": metadata,
        "rules": [],
    }


class TestStaleResourceCollector:
    """Tests for StaleResourceCollector.collect_stale."""

    @pytest.mark.asyncio
    async def test_deletes_owned_resource_not_desired(self, owner: OwnershipLabels) -> None:
        cluster = InMemoryClusterClient([cluster_role("pod-reader", owner.as_labels())])

        result = await StaleResourceCollector(cluster).collect_stale(
            owner, set(), {CLUSTER_ROLE_GVK}, dry_run=False
        )

        assert result.stale == {ROLE_ID}
        assert not result.errors
        assert await cluster.get(ROLE_ID) is None

    @pytest.mark.asyncio
    async def test_dry_run_reports_without_deleting(self, owner: OwnershipLabels) -> None:
        cluster = InMemoryClusterClient([cluster_role("pod-reader", owner.as_labels())])
        before = cluster.snapshot()

        result = await StaleResourceCollector(cluster).collect_stale(
            owner, set(), {CLUSTER_ROLE_GVK}, dry_run=True
        )

        assert result.stale == {ROLE_ID}
        assert cluster.writes == []
        assert cluster.snapshot() == before

    @pytest.mark.asyncio
    async def test_desired_resource_is_kept(self, owner: OwnershipLabels) -> None:
        cluster = InMemoryClusterClient([cluster_role("pod-reader", owner.as_labels())])

        result = await StaleResourceCollector(cluster).collect_stale(
            owner, {ROLE_ID}, {CLUSTER_ROLE_GVK}, dry_run=False
        )

        assert result.stale == set()
        assert await cluster.get(ROLE_ID) is not None

    @pytest.mark.asyncio
    async def test_no_previous_kinds_means_nothing_stale(
        self, owner: OwnershipLabels
    ) -> None:
        cluster = InMemoryClusterClient([cluster_role("pod-reader", owner.as_labels())])

        result = await StaleResourceCollector(cluster).collect_stale(
            owner, set(), set(), dry_run=False
        )

        assert result.stale == set()
        assert await cluster.get(ROLE_ID) is not None

    @pytest.mark.asyncio
    async def test_foreign_resources_are_never_deleted(
        self, owner: OwnershipLabels
    ) -> None:
        """Unlabeled objects and objects of other sources are left alone."""
        other = OwnershipLabels(kind="Secret", name="other", namespace="mgmt")
        cluster = InMemoryClusterClient(
            [
                cluster_role("unlabeled"),
                cluster_role("theirs", other.as_labels()),
                cluster_role("partial", dict(list(owner.as_labels().items())[:2])),
            ]
        )

        result = await StaleResourceCollector(cluster).collect_stale(
            owner, set(), {CLUSTER_ROLE_GVK}, dry_run=False
        )

        assert result.stale == set()
        assert len(await cluster.list(CLUSTER_ROLE_GVK)) == 3

    @pytest.mark.asyncio
    async def test_namespaced_kinds_across_namespaces(
        self, owner: OwnershipLabels
    ) -> None:
        def config_map(name: str, namespace: str) -> dict:
            return {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "name": name,
                    "namespace": namespace,
                    "labels": owner.as_labels(),
                },
            }

        cluster = InMemoryClusterClient(
            [config_map("keep", "team-a"), config_map("drop", "team-b")]
        )
        keep = ResourceIdentity(version="v1", kind="ConfigMap", namespace="team-a", name="keep")
        drop = ResourceIdentity(version="v1", kind="ConfigMap", namespace="team-b", name="drop")

        result = await StaleResourceCollector(cluster).collect_stale(
            owner, {keep}, {CONFIG_MAP_GVK}, dry_run=False
        )

        assert result.stale == {drop}
        assert await cluster.get(keep) is not None
        assert await cluster.get(drop) is None

    @pytest.mark.asyncio
    async def test_failed_delete_is_recorded(self, owner: OwnershipLabels) -> None:
        """A failed deletion is reported and does not stop the others."""
        cluster = InMemoryClusterClient(
            [
                cluster_role("pod-reader", owner.as_labels()),
                cluster_role("node-reader", owner.as_labels()),
            ]
        )
        real_delete = cluster.delete

        async def protected(identity: ResourceIdentity) -> bool:
            if identity.name == "pod-reader":
                raise PermanentAPIError("forbidden", status_code=403)
            return await real_delete(identity)

        cluster.delete = protected  # type: ignore[method-assign]

        result = await StaleResourceCollector(cluster).collect_stale(
            owner, set(), {CLUSTER_ROLE_GVK}, dry_run=False
        )

        assert len(result.stale) == 2
        assert [e.identity for e in result.errors] == [ROLE_ID]
        assert await cluster.get(ROLE_ID) is not None
        assert len(await cluster.list(CLUSTER_ROLE_GVK)) == 1

    @pytest.mark.asyncio
    async def test_list_failure_is_recorded(self, owner: OwnershipLabels) -> None:
        cluster = InMemoryClusterClient()

        async def broken_list(*args: object, **kwargs: object) -> list:
            raise PermanentAPIError("forbidden", status_code=403)

        cluster.list = broken_list  # type: ignore[method-assign]

        result = await StaleResourceCollector(cluster).collect_stale(
            owner, set(), {CLUSTER_ROLE_GVK, CONFIG_MAP_GVK}, dry_run=False
        )

        assert result.stale == set()
        assert len(result.errors) == 2
