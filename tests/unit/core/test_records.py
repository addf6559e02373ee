"""Tests for record storage."""

from pathlib import Path

import pytest

from addon_forge.core.models import (
    FeatureRecord,
    FeatureStatus,
    GroupVersionKind,
    OwnershipLabels,
    ReleaseRecord,
    ReleaseSpec,
    ReleaseStatus,
    ResourceIdentity,
)
from addon_forge.core.records import InMemoryRecordStore, YamlFileRecordStore


def feature_record(feature_id: str = "rbac", cluster: str = "default/workload") -> FeatureRecord:
    identity = ResourceIdentity(
        group="rbac.authorization.k8s.io", version="v1", kind="ClusterRole", name="pod-reader"
    )
    return FeatureRecord(
        cluster=cluster,
        feature_id=feature_id,
        last_applied_hash="abc123",
        status=FeatureStatus.PROVISIONED,
        deployed_resource_kinds={identity.gvk},
        deployed_resource_identities={identity},
        owners={OwnershipLabels(kind="ConfigMap", name="addons", namespace="mgmt")},
    )


def release_record() -> ReleaseRecord:
    spec = ReleaseSpec(
        repository="oci://registry.example.com/charts",
        chart_name="agent",
        chart_version="1.0.0",
        release_name="agent",
        release_namespace="monitoring",
        values={"image": {"tag": "1.2"}, "replicas": 2},
    )
    return ReleaseRecord(
        spec=spec, last_applied_values_hash="def456", status=ReleaseStatus.MANAGED
    )


class TestInMemoryRecordStore:
    """Tests for InMemoryRecordStore."""

    @pytest.mark.asyncio
    async def test_feature_crud(self) -> None:
        store = InMemoryRecordStore()
        record = feature_record()

        assert await store.get_feature("default/workload", "rbac") is None
        await store.save_feature(record)
        assert await store.get_feature("default/workload", "rbac") == record
        assert await store.list_features("default/workload") == [record]
        assert await store.list_features("default/other") == []

        await store.delete_feature("default/workload", "rbac")
        assert await store.get_feature("default/workload", "rbac") is None

    @pytest.mark.asyncio
    async def test_delete_missing_feature(self) -> None:
        store = InMemoryRecordStore()
        await store.delete_feature("default/workload", "nope")

    @pytest.mark.asyncio
    async def test_releases_are_copied(self) -> None:
        """Callers cannot mutate stored release maps in place."""
        store = InMemoryRecordStore()
        record = release_record()
        await store.save_releases("default/workload", {record.key: record})

        releases = await store.get_releases("default/workload")
        releases.clear()

        assert await store.get_releases("default/workload") == {record.key: record}


class TestYamlFileRecordStore:
    """Tests for YamlFileRecordStore."""

    @pytest.mark.asyncio
    async def test_records_survive_reload(self, tmp_path: Path) -> None:
        path = tmp_path / "state" / "records.yaml"
        store = YamlFileRecordStore(path)
        record = feature_record()
        release = release_record()

        await store.save_feature(record)
        await store.save_releases("default/workload", {release.key: release})

        reloaded = YamlFileRecordStore(path)
        assert await reloaded.get_feature("default/workload", "rbac") == record
        assert await reloaded.get_releases("default/workload") == {release.key: release}
        assert not path.with_suffix(".tmp").exists()

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        store = YamlFileRecordStore(tmp_path / "records.yaml")

        assert await store.list_features("default/workload") == []
        assert not (tmp_path / "records.yaml").exists()

    @pytest.mark.asyncio
    async def test_kinds_are_stored_readably(self, tmp_path: Path) -> None:
        path = tmp_path / "records.yaml"
        await YamlFileRecordStore(path).save_feature(feature_record())

        text = path.read_text()
        assert "rbac.authorization.k8s.io" in text
        assert "default/workload" in text

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "records.yaml"
        path.write_text("features: [unclosed")

        with pytest.raises(ValueError, match="Error parsing record file"):
            YamlFileRecordStore(path)

    def test_invalid_record(self, tmp_path: Path) -> None:
        path = tmp_path / "records.yaml"
        path.write_text("features:\n  default/workload:\n    rbac:\n      status: Sideways\n")

        with pytest.raises(ValueError, match="Invalid record file"):
            YamlFileRecordStore(path)

    @pytest.mark.asyncio
    async def test_gvk_round_trip_keeps_core_group(self, tmp_path: Path) -> None:
        path = tmp_path / "records.yaml"
        record = feature_record().model_copy(
            update={"deployed_resource_kinds": {GroupVersionKind(version="v1", kind="ConfigMap")}}
        )
        await YamlFileRecordStore(path).save_feature(record)

        reloaded = await YamlFileRecordStore(path).get_feature("default/workload", "rbac")

        assert reloaded is not None
        assert reloaded.deployed_resource_kinds == {GroupVersionKind(version="v1", kind="ConfigMap")}
