"""Resource deployment.

This module turns a bundle of rendered manifests into create and update
calls against the target cluster, tagging ownership and detecting
conflicts with resources owned by someone else.
"""

from __future__ import annotations

import copy
import json
from typing import TYPE_CHECKING, Any

from loguru import logger

from addon_forge.infra.k8s.utils import bounded

from .constants import DEFAULT_CONSTANTS, EngineConstants
from .errors import (
    AggregateFailure,
    APIError,
    ConflictError,
    DeploymentCancelled,
    ParseError,
)
from .manifests import expand_lists, gvk_of, identity_of, parse_document, split_documents
from .models import (
    CallContext,
    DeploymentOutcome,
    DeploymentRequest,
    DocumentError,
    ResourceIdentity,
)
from .ownership import (
    add_owner_reference,
    ensure_owned,
    merge_owner_references,
    stamp_ownership,
)

if TYPE_CHECKING:
    from addon_forge.infra.k8s.client import ClusterClient


def strip_server_fields(
    obj: dict[str, Any], constants: EngineConstants = DEFAULT_CONSTANTS
) -> dict[str, Any]:
    """Return a copy of an object without fields the API server manages."""
    stripped = {k: v for k, v in obj.items() if k not in constants.SERVER_MANAGED_FIELDS}
    metadata = stripped.get("metadata")
    if isinstance(metadata, dict):
        stripped["metadata"] = {
            k: v for k, v in metadata.items() if k not in constants.SERVER_MANAGED_METADATA
        }
    return stripped


def is_subset(desired: Any, current: Any) -> bool:
    """Check that every field set in ``desired`` has the same value in ``current``.

    Fields only present in ``current`` (server defaults) are ignored. Lists
    must have the same length and match element by element.
    """
    if isinstance(desired, dict):
        if not isinstance(current, dict):
            return False
        return all(k in current and is_subset(v, current[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(current, list) or len(desired) != len(current):
            return False
        return all(is_subset(d, c) for d, c in zip(desired, current, strict=True))
    return bool(desired == current)


def has_drift(desired: dict[str, Any], current: dict[str, Any]) -> bool:
    """Check whether the live object differs from the desired content.

    The last-applied annotations differ whenever the manifest changed,
    removed fields included. The subset check catches edits made in the
    cluster since the last apply.
    """
    key = DEFAULT_CONSTANTS.last_applied_annotation
    if annotations_of(desired).get(key) != annotations_of(current).get(key):
        return True
    return not is_subset(strip_server_fields(desired), strip_server_fields(current))


def annotations_of(obj: dict[str, Any]) -> dict[str, str]:
    return (obj.get("metadata") or {}).get("annotations") or {}


def record_last_applied(
    obj: dict[str, Any], constants: EngineConstants = DEFAULT_CONSTANTS
) -> None:
    """Store the object's own content in its last-applied annotation."""
    key = constants.last_applied_annotation
    metadata = obj.setdefault("metadata", {})
    annotations = {k: v for k, v in annotations_of(obj).items() if k != key}
    content = copy.deepcopy(obj)
    if annotations:
        content["metadata"]["annotations"] = annotations
    else:
        content["metadata"].pop("annotations", None)
    annotations[key] = json.dumps(content, sort_keys=True, separators=(",", ":"))
    metadata["annotations"] = annotations


def last_applied_of(
    obj: dict[str, Any], constants: EngineConstants = DEFAULT_CONSTANTS
) -> dict[str, Any]:
    """Read the content last applied to a live object; empty if unknown."""
    raw = annotations_of(obj).get(constants.last_applied_annotation)
    if not raw:
        return {}
    try:
        content = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Ignoring unreadable last-applied annotation")
        return {}
    return content if isinstance(content, dict) else {}


def merge_patch(desired: dict[str, Any], last_applied: dict[str, Any]) -> dict[str, Any]:
    """Build a JSON merge patch from desired content.

    Fields present in ``last_applied`` but gone from ``desired`` are set
    to None, which deletes them. Fields nobody applied are left alone.
    """
    patch = dict(desired)
    for key, old in last_applied.items():
        if key not in desired:
            patch[key] = None
        elif isinstance(old, dict) and isinstance(desired[key], dict):
            patch[key] = merge_patch(desired[key], old)
    return patch


class ResourceDeployer:
    """Applies manifest bundles to a cluster on behalf of one source.

    Documents are processed sequentially in manifest order so that later
    documents can depend on earlier ones. A failed document never aborts
    the batch.

    Attributes:
        client: Generic cluster client
        timeout: Default seconds allowed per cluster call
    """

    def __init__(
        self,
        client: ClusterClient,
        timeout: float = DEFAULT_CONSTANTS.API_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the deployer.

        Args:
            client: Cluster client for the target cluster
            timeout: Default per-call timeout when the caller gives no context
        """
        self.client = client
        self.timeout = timeout

    async def deploy(
        self, request: DeploymentRequest, ctx: CallContext | None = None
    ) -> DeploymentOutcome:
        """Deploy every document of a request.

        Args:
            request: The manifests and their source
            ctx: Timeout and cancellation for this call

        Returns:
            The outcome; in DryRun mode created/updated/conflicted are
            predictions and no write call is made

        Raises:
            AggregateFailure: If every document failed
            DeploymentCancelled: If the caller cancelled between documents
        """
        ctx = ctx or CallContext(timeout=self.timeout)
        outcome = DeploymentOutcome()
        documents = [
            doc for entry in request.rendered_manifests for doc in split_documents(entry)
        ]
        attempted = 0

        for index, text in enumerate(documents):
            if ctx.cancelled:
                logger.info(
                    f"Deployment of {request.owner} cancelled after {index} document(s)"
                )
                raise DeploymentCancelled(outcome)

            try:
                parsed = parse_document(text)
            except ParseError as e:
                logger.warning(f"Skipping document {index} of {request.owner}: {e}")
                outcome.errors.append(DocumentError(index, None, e))
                attempted += 1
                continue

            for obj in expand_lists(parsed):
                attempted += 1
                await self._deploy_object(obj, index, request, ctx, outcome)

        if attempted and len(outcome.errors) == attempted:
            raise AggregateFailure(outcome)
        if outcome.errors:
            logger.warning(
                f"{len(outcome.errors)} of {attempted} object(s) from {request.owner} "
                f"failed: {outcome.error_summary()}"
            )
        return outcome

    async def _deploy_object(
        self,
        obj: dict[str, Any],
        index: int,
        request: DeploymentRequest,
        ctx: CallContext,
        outcome: DeploymentOutcome,
    ) -> None:
        identity: ResourceIdentity | None = None
        try:
            gvk = gvk_of(obj)
            namespaced = await bounded(
                self.client.is_namespaced(gvk), ctx.timeout, f"discover {gvk}"
            )
            identity = identity_of(
                obj, namespaced=namespaced, default_namespace=request.target_namespace
            )
            if identity.namespace:
                obj["metadata"]["namespace"] = identity.namespace

            stamp_ownership(obj, request.owner)
            if request.owner_reference is not None:
                add_owner_reference(obj, request.owner_reference)
            record_last_applied(obj)

            existing = await bounded(
                self.client.get(identity), ctx.timeout, f"get {identity}"
            )
            if existing is not None:
                try:
                    ensure_owned(existing, request.owner, identity)
                except ConflictError as e:
                    logger.warning(f"{e.message}; leaving it alone")
                    outcome.conflicted.add(identity)
                    return

            if existing is None:
                if not request.dry_run:
                    await bounded(
                        self.client.create(obj), ctx.timeout, f"create {identity}"
                    )
                    logger.info(f"Created {identity}")
                outcome.created.add(identity)
                return

            last_applied = last_applied_of(existing)
            merge_owner_references(obj, existing, last_applied)
            if has_drift(obj, existing):
                if not request.dry_run:
                    await bounded(
                        self.client.update(merge_patch(obj, last_applied)),
                        ctx.timeout,
                        f"update {identity}",
                    )
                    logger.info(f"Updated {identity}")
                if identity not in outcome.created:
                    outcome.updated.add(identity)
            else:
                logger.debug(f"{identity} is up to date")
                if identity not in outcome.created | outcome.updated:
                    outcome.unchanged.add(identity)
        except APIError as e:
            logger.warning(f"Failed to deploy document {index} of {request.owner}: {e}")
            outcome.errors.append(DocumentError(index, identity, e))
