"""Record storage interface and implementations.

The engine never persists anything itself: callers read the previous
FeatureRecord/ReleaseRecords from a store, hand them to the engine, and
save what comes back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, override

import yaml
from loguru import logger
from pydantic import ValidationError

from .models import FeatureRecord, ReleaseRecord


class RecordStore(ABC):
    """Abstract interface for record storage backends."""

    @abstractmethod
    async def get_feature(self, cluster: str, feature_id: str) -> FeatureRecord | None:
        """Retrieve the record of one feature on one cluster.

        Args:
            cluster: Cluster reference
            feature_id: Feature identifier

        Returns:
            The record or None if the feature was never deployed there
        """
        pass

    @abstractmethod
    async def save_feature(self, record: FeatureRecord) -> None:
        """Store a feature record, replacing any previous one."""
        pass

    @abstractmethod
    async def delete_feature(self, cluster: str, feature_id: str) -> None:
        """Forget a feature record. Missing records are ignored."""
        pass

    @abstractmethod
    async def list_features(self, cluster: str) -> list[FeatureRecord]:
        """List every feature record of a cluster."""
        pass

    @abstractmethod
    async def get_releases(self, cluster: str) -> dict[str, ReleaseRecord]:
        """Retrieve the Helm release records of a cluster, keyed by namespace/name."""
        pass

    @abstractmethod
    async def save_releases(self, cluster: str, records: dict[str, ReleaseRecord]) -> None:
        """Replace the Helm release records of a cluster."""
        pass


class InMemoryRecordStore(RecordStore):
    """Records kept in process memory."""

    def __init__(self) -> None:
        self._features: dict[str, dict[str, FeatureRecord]] = {}
        self._releases: dict[str, dict[str, ReleaseRecord]] = {}

    @override
    async def get_feature(self, cluster: str, feature_id: str) -> FeatureRecord | None:
        return self._features.get(cluster, {}).get(feature_id)

    @override
    async def save_feature(self, record: FeatureRecord) -> None:
        self._features.setdefault(record.cluster, {})[record.feature_id] = record
        self._flush()

    @override
    async def delete_feature(self, cluster: str, feature_id: str) -> None:
        if self._features.get(cluster, {}).pop(feature_id, None) is not None:
            self._flush()

    @override
    async def list_features(self, cluster: str) -> list[FeatureRecord]:
        return list(self._features.get(cluster, {}).values())

    @override
    async def get_releases(self, cluster: str) -> dict[str, ReleaseRecord]:
        return dict(self._releases.get(cluster, {}))

    @override
    async def save_releases(self, cluster: str, records: dict[str, ReleaseRecord]) -> None:
        self._releases[cluster] = dict(records)
        self._flush()

    def _flush(self) -> None:
        """Persist after a change; nothing to do in memory."""


class YamlFileRecordStore(InMemoryRecordStore):
    """Records kept in a YAML file, rewritten atomically on every change.

    File layout::

        features:
          <cluster>:
            <feature_id>: {...}
        releases:
          <cluster>:
            <namespace>/<name>: {...}
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug(f"Record file {self.path} does not exist yet")
            return

        try:
            loaded: dict[str, Any] = yaml.safe_load(self.path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Error parsing record file {self.path}: {e}") from e

        try:
            for cluster, features in (loaded.get("features") or {}).items():
                self._features[cluster] = {
                    feature_id: FeatureRecord.model_validate(data)
                    for feature_id, data in (features or {}).items()
                }
            for cluster, releases in (loaded.get("releases") or {}).items():
                self._releases[cluster] = {
                    key: ReleaseRecord.model_validate(data)
                    for key, data in (releases or {}).items()
                }
        except ValidationError as e:
            raise ValueError(f"Invalid record file {self.path}: {e}") from e

    @override
    def _flush(self) -> None:
        serialized = {
            "features": {
                cluster: {
                    feature_id: record.model_dump(mode="json")
                    for feature_id, record in sorted(features.items())
                }
                for cluster, features in sorted(self._features.items())
            },
            "releases": {
                cluster: {
                    key: record.model_dump(mode="json")
                    for key, record in sorted(releases.items())
                }
                for cluster, releases in sorted(self._releases.items())
            },
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        with open(temp_path, "w") as f:
            yaml.safe_dump(serialized, f, default_flow_style=False, sort_keys=False, indent=2)
        temp_path.replace(self.path)
