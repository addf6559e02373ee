"""Kr8s-based implementation of ClusterClient.

Uses the kr8s library for native async, kind-agnostic operations.
"""

from __future__ import annotations

from typing import Any, override

import kr8s
from kr8s.asyncio.objects import object_from_spec
from loguru import logger

from addon_forge.core.constants import DEFAULT_CONSTANTS
from addon_forge.core.errors import classify_api_error
from addon_forge.core.models import GroupVersionKind, ResourceIdentity

from .client import ClusterClient, Object


class Kr8sClusterClient(ClusterClient):
    """Cluster client using the kr8s library.

    Note: The kr8s API client is NOT cached because it's tied to the event loop
    that was running when created. When using run_sync() which calls asyncio.run(),
    each call creates a new event loop, making the cached API unusable.
    """

    def __init__(self, kubeconfig: str | None = None, context: str | None = None) -> None:
        """Initialize the kr8s client.

        Args:
            kubeconfig: Path to a kubeconfig file, or None for the default
            context: Context to use, or None for the current one
        """
        self._kubeconfig = kubeconfig
        self._context = context
        self._namespaced: dict[GroupVersionKind, bool] = {}

    async def _get_api(self) -> Any:  # Returns kr8s._api.Api
        """Create a kr8s API client bound to the running event loop."""
        return await kr8s.asyncio.api(kubeconfig=self._kubeconfig, context=self._context)

    @staticmethod
    def _kind(gvk: GroupVersionKind) -> str:
        # kr8s accepts the kubectl style "kind.version.group" form
        return str(gvk)

    async def _object(self, obj: Object, api: Any) -> Any:
        gvk = GroupVersionKind.from_api_version(obj["apiVersion"], obj["kind"])
        return object_from_spec(
            obj,
            api=api,
            allow_unknown_type=True,
            namespaced=await self.is_namespaced(gvk),
        )

    # =========================================================================
    # Cluster Context
    # =========================================================================

    @override
    async def get_current_context(self) -> str:
        """Get the current kubectl context name."""
        try:
            api = await self._get_api()
            return api.auth.active_context or "unknown"
        except Exception:
            return "unknown"

    # =========================================================================
    # Discovery
    # =========================================================================

    @override
    async def is_namespaced(self, gvk: GroupVersionKind) -> bool:
        """Check whether a kind is namespaced, caching the answer per kind."""
        if gvk in self._namespaced:
            return self._namespaced[gvk]
        try:
            api = await self._get_api()
            # lookup_kind returns the namespaced flag as its last element
            namespaced = bool((await api.lookup_kind(self._kind(gvk)))[-1])
        except Exception as e:
            logger.debug(f"Could not look up {gvk}, guessing scope: {e}")
            namespaced = gvk.kind not in DEFAULT_CONSTANTS.CLUSTER_SCOPED_KINDS
        self._namespaced[gvk] = namespaced
        return namespaced

    # =========================================================================
    # Object Operations
    # =========================================================================

    @override
    async def get(self, identity: ResourceIdentity) -> Object | None:
        """Fetch an object, returning None if it does not exist."""
        try:
            api = await self._get_api()
            async for obj in api.get(
                self._kind(identity.gvk),
                identity.name,
                namespace=identity.namespace or None,
            ):
                return dict(obj.raw)
            return None
        except kr8s.NotFoundError:
            return None
        except kr8s.ServerError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise classify_api_error(e, f"get {identity}") from e

    @override
    async def create(self, obj: Object) -> Object:
        """Create an object."""
        api = await self._get_api()
        resource = await self._object(obj, api)
        await resource.create()
        return dict(resource.raw)

    @override
    async def update(self, obj: Object) -> Object:
        """Merge-patch an existing object; None values delete fields."""
        api = await self._get_api()
        resource = await self._object(obj, api)
        await resource.patch(obj, type="merge")
        return dict(resource.raw)

    @override
    async def delete(self, identity: ResourceIdentity) -> bool:
        """Delete an object, returning False if it was already gone."""
        api = await self._get_api()
        metadata = {"name": identity.name}
        if identity.namespace:
            metadata["namespace"] = identity.namespace
        resource = await self._object(
            {
                "apiVersion": identity.gvk.api_version,
                "kind": identity.kind,
                "metadata": metadata,
            },
            api,
        )
        try:
            await resource.delete()
        except kr8s.NotFoundError:
            return False
        return True

    @override
    async def list(
        self,
        gvk: GroupVersionKind,
        *,
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
    ) -> list[Object]:
        """List objects of a kind, across all namespaces when none is given."""
        api = await self._get_api()
        return [
            dict(obj.raw)
            async for obj in api.get(
                self._kind(gvk),
                namespace=namespace if namespace is not None else kr8s.ALL,
                label_selector=label_selector or None,
            )
        ]
