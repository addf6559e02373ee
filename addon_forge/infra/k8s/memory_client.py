"""In-memory implementation of ClusterClient.

Keeps objects in a dict keyed by identity. Used for offline dry runs
and as the cluster in tests.
"""

from __future__ import annotations

import copy
from datetime import UTC, datetime
from typing import override
from uuid import uuid4

from addon_forge.core.constants import DEFAULT_CONSTANTS
from addon_forge.core.errors import PermanentAPIError
from addon_forge.core.manifests import identity_of
from addon_forge.core.models import GroupVersionKind, ResourceIdentity

from .client import ClusterClient, Object


class InMemoryClusterClient(ClusterClient):
    """Dict-backed cluster with resource versions and label selectors."""

    def __init__(
        self,
        objects: list[Object] | None = None,
        *,
        cluster_scoped_kinds: set[str] | None = None,
        context: str = "in-memory",
    ) -> None:
        """Initialize the in-memory cluster.

        Args:
            objects: Objects present before the first call
            cluster_scoped_kinds: Extra kinds to treat as cluster-scoped
            context: Name reported as the current context
        """
        self._objects: dict[ResourceIdentity, Object] = {}
        self._version = 0
        self._context = context
        self._cluster_scoped = set(DEFAULT_CONSTANTS.CLUSTER_SCOPED_KINDS)
        self._cluster_scoped |= cluster_scoped_kinds or set()
        self.writes: list[tuple[str, ResourceIdentity]] = []

        for obj in objects or []:
            self.add(obj)

    def add(self, obj: Object) -> Object:
        """Store an object directly, as if written by someone else."""
        return self._store(obj)

    def snapshot(self) -> dict[ResourceIdentity, Object]:
        """Deep copy of every stored object, for before/after comparisons."""
        return copy.deepcopy(self._objects)

    def _identity(self, obj: Object) -> ResourceIdentity:
        gvk = GroupVersionKind.from_api_version(obj["apiVersion"], obj["kind"])
        return identity_of(
            obj,
            namespaced=gvk.kind not in self._cluster_scoped,
            default_namespace=DEFAULT_CONSTANTS.DEFAULT_NAMESPACE,
        )

    def _store(self, obj: Object, *, uid: str | None = None) -> Object:
        stored = copy.deepcopy(obj)
        identity = self._identity(stored)
        self._version += 1
        metadata = stored.setdefault("metadata", {})
        if identity.namespace:
            metadata["namespace"] = identity.namespace
        metadata["resourceVersion"] = str(self._version)
        metadata["uid"] = uid or metadata.get("uid") or str(uuid4())
        metadata.setdefault(
            "creationTimestamp", datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        )
        self._objects[identity] = stored
        return copy.deepcopy(stored)

    @override
    async def get_current_context(self) -> str:
        return self._context

    @override
    async def is_namespaced(self, gvk: GroupVersionKind) -> bool:
        return gvk.kind not in self._cluster_scoped

    @override
    async def get(self, identity: ResourceIdentity) -> Object | None:
        obj = self._objects.get(identity)
        return copy.deepcopy(obj) if obj is not None else None

    @override
    async def create(self, obj: Object) -> Object:
        identity = self._identity(obj)
        if identity in self._objects:
            raise PermanentAPIError(f"{identity} already exists", status_code=409)
        self.writes.append(("create", identity))
        return self._store(obj)

    @override
    async def update(self, obj: Object) -> Object:
        identity = self._identity(obj)
        current = self._objects.get(identity)
        if current is None:
            raise PermanentAPIError(f"{identity} not found", status_code=404)
        self.writes.append(("update", identity))
        return self._store(apply_merge_patch(current, obj), uid=current["metadata"]["uid"])

    @override
    async def delete(self, identity: ResourceIdentity) -> bool:
        if identity not in self._objects:
            return False
        self.writes.append(("delete", identity))
        del self._objects[identity]
        return True

    @override
    async def list(
        self,
        gvk: GroupVersionKind,
        *,
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
    ) -> list[Object]:
        result = []
        for identity, obj in self._objects.items():
            if identity.gvk != gvk:
                continue
            if namespace is not None and identity.namespace != namespace:
                continue
            labels = obj.get("metadata", {}).get("labels") or {}
            if any(labels.get(k) != v for k, v in (label_selector or {}).items()):
                continue
            result.append(copy.deepcopy(obj))
        return result


def apply_merge_patch(target: Object, patch: Object) -> Object:
    """Apply a JSON merge patch (RFC 7386) the way the API server does."""
    result = copy.deepcopy(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict):
            base = result.get(key)
            result[key] = apply_merge_patch(base if isinstance(base, dict) else {}, value)
        else:
            result[key] = copy.deepcopy(value)
    return result
