"""Data model for the deployment and reconciliation engine.

Identities and ownership triples are frozen pydantic models so they can
be used as set members and persisted inside records. Outcomes are plain
dataclasses; they never leave the process.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_CONSTANTS
from .errors import TransientAPIError

# =============================================================================
# Enums
# =============================================================================


class SyncMode(StrEnum):
    """How a feature is kept in sync with the target cluster."""

    CONTINUOUS = "Continuous"
    DRY_RUN = "DryRun"
    ONE_TIME = "OneTime"


class FeatureStatus(StrEnum):
    """Lifecycle status of a feature on one cluster."""

    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    FAILED = "Failed"
    REMOVING = "Removing"
    REMOVED = "Removed"


class ReleaseStatus(StrEnum):
    """State of a Helm release as seen by the reconciler."""

    NOT_INSTALLED = "NotInstalled"
    MANAGED = "Managed"
    UNMANAGED = "Unmanaged"
    FAILED = "Failed"


class SourceKind(StrEnum):
    """Kinds of objects that can hold raw manifests."""

    CONFIG_MAP = "ConfigMap"
    SECRET = "Secret"


# =============================================================================
# Identities
# =============================================================================


class GroupVersionKind(BaseModel):
    """API group, version and kind of a resource."""

    model_config = ConfigDict(frozen=True)

    group: str = ""
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        """The apiVersion field value for this kind."""
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        if self.group:
            return f"{self.kind}.{self.version}.{self.group}"
        return f"{self.kind}.{self.version}"

    @classmethod
    def parse(cls, value: str) -> GroupVersionKind:
        """Parse the ``Kind.version.group`` string form.

        Args:
            value: String such as ``ClusterRole.v1.rbac.authorization.k8s.io``

        Returns:
            The parsed GroupVersionKind

        Raises:
            ValueError: If the string has no version component
        """
        parts = value.split(".", 2)
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid GroupVersionKind '{value}'")
        group = parts[2] if len(parts) == 3 else ""
        return cls(group=group, version=parts[1], kind=parts[0])

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> GroupVersionKind:
        """Build from an object's apiVersion and kind fields."""
        if "/" in api_version:
            group, version = api_version.split("/", 1)
        else:
            group, version = "", api_version
        return cls(group=group, version=version, kind=kind)


class ResourceIdentity(BaseModel):
    """Canonical key of a deployed object, independent of its content."""

    model_config = ConfigDict(frozen=True)

    group: str = ""
    version: str
    kind: str
    namespace: str = ""
    name: str

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind(group=self.group, version=self.version, kind=self.kind)

    @property
    def key(self) -> str:
        """Short ``Kind.group:namespace:name`` form used in reports."""
        return f"{self.kind}.{self.group}:{self.namespace}:{self.name}"

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


class OwnershipLabels(BaseModel):
    """The (kind, name, namespace) of the source object that owns a resource."""

    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    namespace: str

    def as_labels(self) -> dict[str, str]:
        """Render as the three ownership labels."""
        return {
            DEFAULT_CONSTANTS.reference_kind_label: self.kind,
            DEFAULT_CONSTANTS.reference_name_label: self.name,
            DEFAULT_CONSTANTS.reference_namespace_label: self.namespace,
        }

    @classmethod
    def from_labels(cls, labels: dict[str, str] | None) -> OwnershipLabels | None:
        """Read the ownership triple from a label map.

        Returns:
            The triple, or None unless all three labels are present
        """
        if not labels:
            return None
        try:
            return cls(
                kind=labels[DEFAULT_CONSTANTS.reference_kind_label],
                name=labels[DEFAULT_CONSTANTS.reference_name_label],
                namespace=labels[DEFAULT_CONSTANTS.reference_namespace_label],
            )
        except KeyError:
            return None

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


class OwnerReference(BaseModel):
    """Link from a deployed object to the top-level specification object."""

    model_config = ConfigDict(frozen=True)

    api_version: str
    kind: str
    name: str
    uid: str

    def as_dict(self) -> dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
        }


# =============================================================================
# Deployment
# =============================================================================


@dataclass
class DeploymentRequest:
    """One reconciliation ask: apply rendered manifests of one source to a cluster.

    Attributes:
        source_kind: Kind of the object that produced the manifests
        source_name: Name of that object
        source_namespace: Namespace of that object
        target_cluster: Reference of the cluster the manifests go to
        sync_mode: Governs whether the cluster may be mutated
        rendered_manifests: Ordered raw documents
        target_namespace: Namespace for namespaced objects that set none
        owner_reference: Top-level specification object to link back to
    """

    source_kind: str
    source_name: str
    source_namespace: str
    target_cluster: str
    sync_mode: SyncMode
    rendered_manifests: list[str]
    target_namespace: str = DEFAULT_CONSTANTS.DEFAULT_NAMESPACE
    owner_reference: OwnerReference | None = None

    @property
    def owner(self) -> OwnershipLabels:
        return OwnershipLabels(
            kind=self.source_kind,
            name=self.source_name,
            namespace=self.source_namespace,
        )

    @property
    def dry_run(self) -> bool:
        return self.sync_mode == SyncMode.DRY_RUN


@dataclass
class DocumentError:
    """Failure of a single document or object.

    Attributes:
        index: Position of the document in the bundle (-1 when not applicable)
        identity: Identity of the object, when it could be determined
        error: The underlying exception
    """

    index: int
    identity: ResourceIdentity | None
    error: Exception

    @property
    def retryable(self) -> bool:
        return isinstance(self.error, TransientAPIError)

    def __str__(self) -> str:
        where = str(self.identity) if self.identity else f"document {self.index}"
        return f"{where}: {self.error}"


@dataclass
class DeploymentOutcome:
    """Result of deploying one manifest bundle.

    ``created``, ``updated`` and ``conflicted`` are disjoint. In DryRun mode
    they are predictions.
    """

    created: set[ResourceIdentity] = field(default_factory=set)
    updated: set[ResourceIdentity] = field(default_factory=set)
    conflicted: set[ResourceIdentity] = field(default_factory=set)
    unchanged: set[ResourceIdentity] = field(default_factory=set)
    errors: list[DocumentError] = field(default_factory=list)

    @property
    def desired(self) -> set[ResourceIdentity]:
        """Identities the source owns after this deployment."""
        return self.created | self.updated | self.unchanged

    def error_summary(self) -> str:
        """Non-fatal summary of every failed document."""
        return "; ".join(str(e) for e in self.errors)

    def merge(self, other: DeploymentOutcome) -> None:
        self.created |= other.created
        self.updated |= other.updated
        self.conflicted |= other.conflicted
        self.unchanged |= other.unchanged
        self.errors.extend(other.errors)


@dataclass
class StaleResult:
    """Result of a stale resource collection pass."""

    stale: set[ResourceIdentity] = field(default_factory=set)
    errors: list[DocumentError] = field(default_factory=list)

    def merge(self, other: StaleResult) -> None:
        self.stale |= other.stale
        self.errors.extend(other.errors)


# =============================================================================
# Persisted records
# =============================================================================


class FeatureRecord(BaseModel):
    """What was last applied for one (cluster, feature) pair."""

    cluster: str
    feature_id: str
    last_applied_hash: str | None = None
    status: FeatureStatus = FeatureStatus.PROVISIONING
    deployed_resource_kinds: set[GroupVersionKind] = Field(default_factory=set)
    deployed_resource_identities: set[ResourceIdentity] = Field(default_factory=set)
    owners: set[OwnershipLabels] = Field(default_factory=set)
    failure_message: str | None = None


class ReleaseSpec(BaseModel):
    """A desired Helm chart release."""

    repository: str
    chart_name: str
    chart_version: str
    release_name: str
    release_namespace: str
    values: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.release_namespace}/{self.release_name}"


class ReleaseRecord(BaseModel):
    """What the engine knows about one Helm release on one cluster."""

    spec: ReleaseSpec
    last_applied_values_hash: str | None = None
    status: ReleaseStatus = ReleaseStatus.NOT_INSTALLED
    failure_message: str | None = None

    @property
    def key(self) -> str:
        return self.spec.key


# =============================================================================
# Feature inputs
# =============================================================================


class ContentSource(BaseModel):
    """A ConfigMap or Secret whose data values hold manifests.

    Attributes:
        kind: ConfigMap or Secret
        name: Object name
        namespace: Object namespace
        data: Data values; Secret values are base64 encoded
        template: Whether values must go through the template renderer
        script: Whether values are scripts for the script evaluator
    """

    kind: SourceKind
    name: str
    namespace: str
    data: dict[str, str] = Field(default_factory=dict)
    template: bool = False
    script: bool = False

    @property
    def owner(self) -> OwnershipLabels:
        return OwnershipLabels(
            kind=self.kind.value, name=self.name, namespace=self.namespace
        )

    def decoded(self, key: str) -> str:
        """Get a data value, base64-decoding Secret values."""
        value = self.data[key]
        if self.kind == SourceKind.SECRET:
            return base64.b64decode(value).decode("utf-8")
        return value


class TemplateResourceRef(BaseModel):
    """A management-cluster object made available to templates and scripts.

    Attributes:
        identifier: Name the object is exposed under
        gvk: Kind of the object
        name: Object name; may contain {{ .ClusterName }} and
            {{ .ClusterNamespace }} placeholders
        namespace: Object namespace; empty means the cluster's namespace
    """

    identifier: str
    gvk: GroupVersionKind
    name: str
    namespace: str = ""


class FeatureSpec(BaseModel):
    """What to deploy for one feature on one cluster.

    Attributes:
        feature_id: Identifier of the feature within its profile
        sync_mode: Governs mutation of the target cluster
        sources: Content sources, deployed in order
        owner_reference: Top-level specification object
        context_objects: Named objects handed to template and script
            collaborators; their versions take part in the hash
        template_resource_refs: Management-cluster objects fetched before
            rendering and merged into the context objects
        target_namespace: Namespace for namespaced objects that set none;
            None uses the configured default namespace
    """

    feature_id: str
    sync_mode: SyncMode = SyncMode.CONTINUOUS
    sources: list[ContentSource] = Field(default_factory=list)
    owner_reference: OwnerReference | None = None
    context_objects: dict[str, dict[str, Any]] = Field(default_factory=dict)
    template_resource_refs: list[TemplateResourceRef] = Field(default_factory=list)
    target_namespace: str | None = None


@dataclass
class CallContext:
    """Bounds every cluster call made on behalf of one caller.

    Attributes:
        timeout: Seconds allowed for each cluster API call
        cancel_event: When set, batch processing stops after the current
            document
    """

    timeout: float = DEFAULT_CONSTANTS.API_TIMEOUT_SECONDS
    cancel_event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()
