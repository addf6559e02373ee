"""Abstract cluster client interface.

Defines the generic contract the engine uses against a target cluster.
Objects are plain dicts addressed by ResourceIdentity or
GroupVersionKind, so no operation needs to know a kind in advance.
Implementations exist for the kr8s library and for an in-memory store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from addon_forge.core.models import GroupVersionKind, ResourceIdentity

# Alias for a generic structured object
Object = dict[str, Any]


class ClusterClient(ABC):
    """Abstract base class for generic cluster operations.

    All methods are async. Failures are raised as
    ``TransientAPIError`` or ``PermanentAPIError``; a missing object is
    never an error for ``get``.

    Example:
        from addon_forge.infra.k8s import Kr8sClusterClient, run_sync

        client = Kr8sClusterClient()
        obj = run_sync(client.get(identity))
    """

    # =========================================================================
    # Cluster Context
    # =========================================================================

    @abstractmethod
    async def get_current_context(self) -> str:
        """Get the name of the cluster context in use.

        Returns:
            Context name, or "unknown" if detection fails
        """
        ...

    # =========================================================================
    # Discovery
    # =========================================================================

    @abstractmethod
    async def is_namespaced(self, gvk: GroupVersionKind) -> bool:
        """Check whether objects of a kind live in a namespace.

        Args:
            gvk: Kind to look up

        Returns:
            True for namespaced kinds, False for cluster-scoped kinds
        """
        ...

    # =========================================================================
    # Object Operations
    # =========================================================================

    @abstractmethod
    async def get(self, identity: ResourceIdentity) -> Object | None:
        """Fetch an object.

        Args:
            identity: Identity of the object

        Returns:
            The object, or None if it does not exist
        """
        ...

    @abstractmethod
    async def create(self, obj: Object) -> Object:
        """Create an object.

        Args:
            obj: Full object, including apiVersion, kind and metadata

        Returns:
            The object as stored by the server
        """
        ...

    @abstractmethod
    async def update(self, obj: Object) -> Object:
        """Apply a JSON merge patch to an existing object.

        None values delete the field; fields the patch leaves out are kept.

        Args:
            obj: Patch carrying apiVersion, kind, name and namespace

        Returns:
            The object as stored by the server
        """
        ...

    @abstractmethod
    async def delete(self, identity: ResourceIdentity) -> bool:
        """Delete an object.

        Args:
            identity: Identity of the object

        Returns:
            True if the object was deleted, False if it did not exist
        """
        ...

    @abstractmethod
    async def list(
        self,
        gvk: GroupVersionKind,
        *,
        namespace: str | None = None,
        label_selector: dict[str, str] | None = None,
    ) -> list[Object]:
        """List objects of a kind.

        Args:
            gvk: Kind to list
            namespace: Namespace to list in, or None for all namespaces
            label_selector: Labels every returned object must carry

        Returns:
            List of matching objects
        """
        ...
