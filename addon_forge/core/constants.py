"""Engine constants.

This module centralizes label keys, field names and defaults used
throughout the deployment and reconciliation engine.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConstants:
    """Constants for resource deployment and Helm reconciliation.

    All attributes are class-level and immutable.
    """

    # Ownership labels stamped on every deployed resource
    LABEL_PREFIX: str = "addon-forge.io"

    # Helm release ownership marker
    HELM_MANAGER_NAME: str = "addon-forge"

    # Helm storage secrets carry these labels
    HELM_STORAGE_OWNER_LABEL: str = "owner"
    HELM_STORAGE_NAME_LABEL: str = "name"
    HELM_STORAGE_VERSION_LABEL: str = "version"

    # Timeouts
    API_TIMEOUT_SECONDS: float = 30.0
    HELM_TIMEOUT: str = "10m"

    DEFAULT_NAMESPACE: str = "default"

    # Metadata fields populated by the API server
    SERVER_MANAGED_METADATA: tuple[str, ...] = (
        "resourceVersion",
        "uid",
        "creationTimestamp",
        "generation",
        "managedFields",
        "selfLink",
        "deletionTimestamp",
        "deletionGracePeriodSeconds",
    )

    # Top-level fields populated by the API server
    SERVER_MANAGED_FIELDS: tuple[str, ...] = ("status",)

    # Kinds that are never namespaced even when a client cannot tell
    CLUSTER_SCOPED_KINDS: frozenset[str] = frozenset(
        {
            "Namespace",
            "Node",
            "PersistentVolume",
            "ClusterRole",
            "ClusterRoleBinding",
            "CustomResourceDefinition",
            "StorageClass",
            "PriorityClass",
            "IngressClass",
            "MutatingWebhookConfiguration",
            "ValidatingWebhookConfiguration",
            "APIService",
            "RuntimeClass",
            "CSIDriver",
        }
    )

    @property
    def reference_kind_label(self) -> str:
        """Label naming the kind of the source object."""
        return f"{self.LABEL_PREFIX}/reference-kind"

    @property
    def reference_name_label(self) -> str:
        """Label naming the source object."""
        return f"{self.LABEL_PREFIX}/reference-name"

    @property
    def reference_namespace_label(self) -> str:
        """Label naming the namespace of the source object."""
        return f"{self.LABEL_PREFIX}/reference-namespace"

    @property
    def last_applied_annotation(self) -> str:
        """Annotation holding the content this engine last applied to an object."""
        return f"{self.LABEL_PREFIX}/last-applied"

    @property
    def helm_managed_by_label(self) -> str:
        """Label marking a Helm release as installed by this engine."""
        return f"{self.LABEL_PREFIX}/managed-by"

    @property
    def helm_cluster_label(self) -> str:
        """Label naming the cluster a Helm release was reconciled for."""
        return f"{self.LABEL_PREFIX}/cluster"


DEFAULT_CONSTANTS = EngineConstants()
