"""Tests for the resource deployer."""

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from addon_forge.core.constants import DEFAULT_CONSTANTS
from addon_forge.core.deployer import ResourceDeployer, has_drift, is_subset, merge_patch
from addon_forge.core.errors import (
    AggregateFailure,
    DeploymentCancelled,
    ParseError,
    PermanentAPIError,
    TransientAPIError,
)
from addon_forge.core.models import (
    CallContext,
    DeploymentRequest,
    OwnerReference,
    OwnershipLabels,
    ResourceIdentity,
    SyncMode,
)
from addon_forge.infra.k8s import InMemoryClusterClient

CLUSTER_ROLE = """\
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRole
metadata:
  name: pod-reader
rules:
- apiGroups: [""]
  resources: ["pods"]
  verbs: ["get", "list"]
"""

CONFIG_MAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
data:
  mode: fast
"""

SERVICE_ACCOUNT = """\
apiVersion: v1
kind: ServiceAccount
metadata:
  name: agent
  namespace: monitoring
"""

MALFORMED = """\
apiVersion: v1
kind: ConfigMap
metadata: [unclosed
"""

ROLE_ID = ResourceIdentity(
    group="rbac.authorization.k8s.io", version="v1", kind="ClusterRole", name="pod-reader"
)
CONFIG_MAP_ID = ResourceIdentity(
    version="v1", kind="ConfigMap", namespace="default", name="settings"
)
SERVICE_ACCOUNT_ID = ResourceIdentity(
    version="v1", kind="ServiceAccount", namespace="monitoring", name="agent"
)

RequestFactory = Callable[..., DeploymentRequest]


class TestDiff:
    """Tests for content comparison."""

    def test_subset_ignores_server_defaults(self) -> None:
        desired = {"spec": {"replicas": 2}}
        current = {"spec": {"replicas": 2, "strategy": {"type": "RollingUpdate"}}}
        assert is_subset(desired, current)

    def test_subset_detects_changed_value(self) -> None:
        assert not is_subset({"spec": {"replicas": 2}}, {"spec": {"replicas": 3}})

    def test_subset_lists_must_match_in_length(self) -> None:
        assert not is_subset({"items": [1]}, {"items": [1, 2]})

    def test_drift_ignores_server_managed_fields(self) -> None:
        desired = {"metadata": {"name": "a"}, "data": {"k": "v"}}
        current = {
            "metadata": {"name": "a", "resourceVersion": "7", "uid": "x"},
            "data": {"k": "v"},
            "status": {"phase": "Active"},
        }
        assert not has_drift(desired, current)

    def test_drift_when_last_applied_differs(self) -> None:
        """A manifest that only lost fields is still a change."""
        key = DEFAULT_CONSTANTS.last_applied_annotation
        desired = {"metadata": {"annotations": {key: '{"data":{"a":"1"}}'}}, "data": {"a": "1"}}
        current = {
            "metadata": {"annotations": {key: '{"data":{"a":"1","b":"2"}}'}},
            "data": {"a": "1", "b": "2"},
        }
        assert has_drift(desired, current)

    def test_merge_patch_deletes_dropped_fields(self) -> None:
        last_applied = {"data": {"a": "1", "b": "2"}, "metadata": {"labels": {"tier": "web"}}}
        desired = {"data": {"a": "1"}, "metadata": {"name": "settings"}}

        assert merge_patch(desired, last_applied) == {
            "data": {"a": "1", "b": None},
            "metadata": {"name": "settings", "labels": None},
        }


class TestResourceDeployer:
    """Tests for ResourceDeployer.deploy."""

    @pytest.mark.asyncio
    async def test_creates_and_stamps_ownership(
        self,
        cluster: InMemoryClusterClient,
        make_request: RequestFactory,
        owner: OwnershipLabels,
        owner_reference: OwnerReference,
    ) -> None:
        """New objects are created with ownership labels and owner reference."""
        deployer = ResourceDeployer(cluster)

        outcome = await deployer.deploy(
            make_request(CLUSTER_ROLE, CONFIG_MAP, owner_reference=owner_reference)
        )

        assert outcome.created == {ROLE_ID, CONFIG_MAP_ID}
        assert not outcome.updated
        assert not outcome.conflicted
        assert not outcome.errors

        stored = await cluster.get(CONFIG_MAP_ID)
        assert stored is not None
        assert stored["metadata"]["labels"] == owner.as_labels()
        assert stored["metadata"]["ownerReferences"] == [owner_reference.as_dict()]

    @pytest.mark.asyncio
    async def test_cluster_scoped_objects_have_no_namespace(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        """Cluster-scoped kinds are never placed in the default namespace."""
        outcome = await ResourceDeployer(cluster).deploy(make_request(CLUSTER_ROLE))

        (identity,) = outcome.created
        assert identity.namespace == ""

    @pytest.mark.asyncio
    async def test_explicit_namespace_is_kept(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        outcome = await ResourceDeployer(cluster).deploy(make_request(SERVICE_ACCOUNT))

        assert outcome.created == {SERVICE_ACCOUNT_ID}

    @pytest.mark.asyncio
    async def test_idempotent(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        """A second identical deploy creates and updates nothing."""
        deployer = ResourceDeployer(cluster)
        request = make_request(CLUSTER_ROLE, CONFIG_MAP)

        await deployer.deploy(request)
        cluster.writes.clear()
        outcome = await deployer.deploy(make_request(CLUSTER_ROLE, CONFIG_MAP))

        assert outcome.created == set()
        assert outcome.updated == set()
        assert outcome.unchanged == {ROLE_ID, CONFIG_MAP_ID}
        assert cluster.writes == []

    @pytest.mark.asyncio
    async def test_changed_content_is_updated(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        deployer = ResourceDeployer(cluster)
        await deployer.deploy(make_request(CONFIG_MAP))

        outcome = await deployer.deploy(
            make_request(CONFIG_MAP.replace("mode: fast", "mode: safe"))
        )

        assert outcome.updated == {CONFIG_MAP_ID}
        stored = await cluster.get(CONFIG_MAP_ID)
        assert stored is not None
        assert stored["data"] == {"mode": "safe"}

    @pytest.mark.asyncio
    async def test_removed_fields_are_deleted(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        """Data keys and labels dropped from the manifest leave the live object."""
        deployer = ResourceDeployer(cluster)
        fuller = CONFIG_MAP.replace(
            "  name: settings\n", "  name: settings\n  labels:\n    tier: web\n"
        ).replace("  mode: fast\n", "  mode: fast\n  level: debug\n")
        await deployer.deploy(make_request(fuller))

        outcome = await deployer.deploy(make_request(CONFIG_MAP))

        assert outcome.updated == {CONFIG_MAP_ID}
        stored = await cluster.get(CONFIG_MAP_ID)
        assert stored is not None
        assert stored["data"] == {"mode": "fast"}
        assert "tier" not in stored["metadata"]["labels"]

    @pytest.mark.asyncio
    async def test_fields_added_in_cluster_survive_update(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        deployer = ResourceDeployer(cluster)
        await deployer.deploy(make_request(CONFIG_MAP))
        live = await cluster.get(CONFIG_MAP_ID)
        assert live is not None
        live["metadata"]["labels"]["team"] = "ops"
        cluster.add(live)

        outcome = await deployer.deploy(make_request(CONFIG_MAP.replace("fast", "safe")))

        assert outcome.updated == {CONFIG_MAP_ID}
        stored = await cluster.get(CONFIG_MAP_ID)
        assert stored is not None
        assert stored["data"] == {"mode": "safe"}
        assert stored["metadata"]["labels"]["team"] == "ops"

    @pytest.mark.asyncio
    async def test_foreign_owner_references_are_kept(
        self,
        cluster: InMemoryClusterClient,
        make_request: RequestFactory,
        owner_reference: OwnerReference,
    ) -> None:
        """Another controller's owner reference neither causes drift nor gets dropped."""
        deployer = ResourceDeployer(cluster)
        await deployer.deploy(make_request(CONFIG_MAP, owner_reference=owner_reference))
        live = await cluster.get(CONFIG_MAP_ID)
        assert live is not None
        live["metadata"]["ownerReferences"].append(
            {"apiVersion": "apps/v1", "kind": "Deployment", "name": "operator", "uid": "u2"}
        )
        cluster.add(live)
        cluster.writes.clear()

        again = await deployer.deploy(make_request(CONFIG_MAP, owner_reference=owner_reference))

        assert again.unchanged == {CONFIG_MAP_ID}
        assert cluster.writes == []

        changed = await deployer.deploy(
            make_request(CONFIG_MAP.replace("fast", "safe"), owner_reference=owner_reference)
        )

        assert changed.updated == {CONFIG_MAP_ID}
        stored = await cluster.get(CONFIG_MAP_ID)
        assert stored is not None
        assert [r["uid"] for r in stored["metadata"]["ownerReferences"]] == [
            owner_reference.uid,
            "u2",
        ]

    @pytest.mark.asyncio
    async def test_dropped_owner_reference_is_removed(
        self,
        cluster: InMemoryClusterClient,
        make_request: RequestFactory,
        owner_reference: OwnerReference,
    ) -> None:
        deployer = ResourceDeployer(cluster)
        await deployer.deploy(make_request(CONFIG_MAP, owner_reference=owner_reference))

        outcome = await deployer.deploy(make_request(CONFIG_MAP))

        assert outcome.updated == {CONFIG_MAP_ID}
        stored = await cluster.get(CONFIG_MAP_ID)
        assert stored is not None
        assert "ownerReferences" not in stored["metadata"]

    @pytest.mark.asyncio
    async def test_foreign_object_is_a_conflict(
        self, make_request: RequestFactory
    ) -> None:
        """An object without matching labels is never written."""
        cluster = InMemoryClusterClient(
            [
                {
                    "apiVersion": "v1",
                    "kind": "ConfigMap",
                    "metadata": {"name": "settings", "namespace": "default"},
                    "data": {"mode": "theirs"},
                }
            ]
        )
        before = cluster.snapshot()

        outcome = await ResourceDeployer(cluster).deploy(make_request(CONFIG_MAP))

        assert outcome.conflicted == {CONFIG_MAP_ID}
        assert not outcome.created and not outcome.updated
        assert not outcome.errors
        assert cluster.snapshot() == before

    @pytest.mark.asyncio
    async def test_object_of_another_source_is_a_conflict(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        other = OwnershipLabels(kind="Secret", name="other", namespace="mgmt")
        await ResourceDeployer(cluster).deploy(make_request(CONFIG_MAP, source=other))

        outcome = await ResourceDeployer(cluster).deploy(
            make_request(CONFIG_MAP.replace("fast", "safe"))
        )

        assert outcome.conflicted == {CONFIG_MAP_ID}
        stored = await cluster.get(CONFIG_MAP_ID)
        assert stored is not None
        assert stored["data"] == {"mode": "fast"}

    @pytest.mark.asyncio
    async def test_dry_run_does_not_mutate(
        self, make_request: RequestFactory, owner: OwnershipLabels
    ) -> None:
        """Dry run predicts create, update and conflict without writing."""
        cluster = InMemoryClusterClient(
            [
                {
                    "apiVersion": "v1",
                    "kind": "ConfigMap",
                    "metadata": {
                        "name": "settings",
                        "namespace": "default",
                        "labels": owner.as_labels(),
                    },
                    "data": {"mode": "slow"},
                },
                {
                    "apiVersion": "v1",
                    "kind": "ServiceAccount",
                    "metadata": {"name": "agent", "namespace": "monitoring"},
                },
            ]
        )
        before = cluster.snapshot()

        outcome = await ResourceDeployer(cluster).deploy(
            make_request(
                CLUSTER_ROLE, CONFIG_MAP, SERVICE_ACCOUNT, sync_mode=SyncMode.DRY_RUN
            )
        )

        assert outcome.created == {ROLE_ID}
        assert outcome.updated == {CONFIG_MAP_ID}
        assert outcome.conflicted == {SERVICE_ACCOUNT_ID}
        assert cluster.writes == []
        assert cluster.snapshot() == before

    @pytest.mark.asyncio
    async def test_malformed_document_does_not_abort_batch(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        """Documents 1 and 3 are created; document 2 is recorded as a parse error."""
        bundle = f"{CLUSTER_ROLE}---\n{MALFORMED}---\n{SERVICE_ACCOUNT}"

        outcome = await ResourceDeployer(cluster).deploy(make_request(bundle))

        assert outcome.created == {ROLE_ID, SERVICE_ACCOUNT_ID}
        assert len(outcome.errors) == 1
        error = outcome.errors[0]
        assert error.index == 1
        assert error.identity is None
        assert isinstance(error.error, ParseError)

    @pytest.mark.asyncio
    async def test_document_without_name_is_a_parse_error(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        nameless = "apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n"

        outcome = await ResourceDeployer(cluster).deploy(make_request(CONFIG_MAP, nameless))

        assert outcome.created == {CONFIG_MAP_ID}
        assert isinstance(outcome.errors[0].error, ParseError)

    @pytest.mark.asyncio
    async def test_all_documents_failing_raises_aggregate_failure(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        with pytest.raises(AggregateFailure) as exc_info:
            await ResourceDeployer(cluster).deploy(make_request(MALFORMED, "- just\n- a list\n"))

        assert len(exc_info.value.outcome.errors) == 2
        assert not exc_info.value.outcome.created

    @pytest.mark.asyncio
    async def test_empty_bundle(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        outcome = await ResourceDeployer(cluster).deploy(make_request("", "# comment only\n"))

        assert outcome.desired == set()
        assert not outcome.errors

    @pytest.mark.asyncio
    async def test_list_kind_is_expanded(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        bundle = (
            "apiVersion: v1\nkind: List\nmetadata:\n  name: items\nitems:\n"
            "- apiVersion: v1\n  kind: ConfigMap\n  metadata:\n    name: settings\n"
            "- apiVersion: v1\n  kind: ServiceAccount\n  metadata:\n"
            "    name: agent\n    namespace: monitoring\n"
        )

        outcome = await ResourceDeployer(cluster).deploy(make_request(bundle))

        assert outcome.created == {CONFIG_MAP_ID, SERVICE_ACCOUNT_ID}

    @pytest.mark.asyncio
    async def test_permanent_error_is_per_document(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        """A rejected object is recorded and the rest of the batch proceeds."""
        real_create = cluster.create

        async def reject_cluster_roles(obj: dict) -> dict:
            if obj["kind"] == "ClusterRole":
                raise PermanentAPIError("admission webhook denied", status_code=403)
            return await real_create(obj)

        cluster.create = reject_cluster_roles  # type: ignore[method-assign]

        outcome = await ResourceDeployer(cluster).deploy(make_request(CLUSTER_ROLE, CONFIG_MAP))

        assert outcome.created == {CONFIG_MAP_ID}
        assert len(outcome.errors) == 1
        assert outcome.errors[0].identity == ROLE_ID
        assert not outcome.errors[0].retryable

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, make_request: RequestFactory) -> None:
        """A call exceeding the caller's timeout fails with a retryable error."""
        client = AsyncMock()
        client.is_namespaced.return_value = True

        async def hang(*args: object) -> None:
            await asyncio.sleep(10)

        client.get.side_effect = hang

        with pytest.raises(AggregateFailure) as exc_info:
            await ResourceDeployer(client).deploy(
                make_request(CONFIG_MAP), CallContext(timeout=0.01)
            )

        error = exc_info.value.outcome.errors[0]
        assert isinstance(error.error, TransientAPIError)
        assert error.retryable
        assert error.identity == CONFIG_MAP_ID

    @pytest.mark.asyncio
    async def test_cancellation_stops_between_documents(
        self, cluster: InMemoryClusterClient, make_request: RequestFactory
    ) -> None:
        """Documents after the cancellation point are not processed."""
        cancel = asyncio.Event()
        real_create = cluster.create

        async def create_then_cancel(obj: dict) -> dict:
            result = await real_create(obj)
            cancel.set()
            return result

        cluster.create = create_then_cancel  # type: ignore[method-assign]

        with pytest.raises(DeploymentCancelled) as exc_info:
            await ResourceDeployer(cluster).deploy(
                make_request(CLUSTER_ROLE, CONFIG_MAP),
                CallContext(cancel_event=cancel),
            )

        assert exc_info.value.outcome.created == {ROLE_ID}
        assert await cluster.get(CONFIG_MAP_ID) is None
