"""Stale resource collection.

Diffs the resources a source owns in the cluster against the ones it
currently wants, and removes the difference. Only kinds the engine has
previously deployed are ever scanned.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from loguru import logger

from addon_forge.infra.k8s.utils import bounded

from .constants import DEFAULT_CONSTANTS
from .errors import APIError
from .manifests import identity_of
from .models import (
    CallContext,
    DocumentError,
    GroupVersionKind,
    OwnershipLabels,
    ResourceIdentity,
    StaleResult,
)
from .ownership import is_owned_by

if TYPE_CHECKING:
    from addon_forge.infra.k8s.client import ClusterClient


class StaleResourceCollector:
    """Finds and deletes resources a source no longer wants.

    A resource is only ever deleted when its ownership labels match the
    requesting source. Deletions are best-effort and independent of each
    other.
    """

    def __init__(
        self,
        client: ClusterClient,
        timeout: float = DEFAULT_CONSTANTS.API_TIMEOUT_SECONDS,
    ) -> None:
        self.client = client
        self.timeout = timeout

    async def collect_stale(
        self,
        owner: OwnershipLabels,
        desired: set[ResourceIdentity],
        previously_deployed_kinds: Iterable[GroupVersionKind],
        dry_run: bool,
        ctx: CallContext | None = None,
    ) -> StaleResult:
        """Collect resources owned by ``owner`` that are not in ``desired``.

        Args:
            owner: Ownership triple of the source
            desired: Identities the source currently deploys
            previously_deployed_kinds: Kinds recorded from the previous run
            dry_run: If True, report without deleting
            ctx: Timeout for each cluster call

        Returns:
            StaleResult with the stale identities (deleted, or predicted in
            dry run) and any per-object errors
        """
        ctx = ctx or CallContext(timeout=self.timeout)
        result = StaleResult()

        for gvk in sorted(previously_deployed_kinds, key=str):
            try:
                namespaced = await bounded(
                    self.client.is_namespaced(gvk), ctx.timeout, f"discover {gvk}"
                )
                objects = await bounded(
                    self.client.list(gvk, label_selector=owner.as_labels()),
                    ctx.timeout,
                    f"list {gvk}",
                )
            except APIError as e:
                logger.warning(f"Could not list {gvk} owned by {owner}: {e}")
                result.errors.append(DocumentError(-1, None, e))
                continue

            for obj in objects:
                # The label selector is a hint; ownership is re-checked here
                if not is_owned_by(obj, owner):
                    continue
                identity = identity_of(obj, namespaced=namespaced, default_namespace="")
                if identity in desired:
                    continue
                result.stale.add(identity)
                if dry_run:
                    logger.info(f"Would delete stale {identity}")
                    continue
                await self._delete(identity, ctx, result)

        return result

    async def _delete(
        self, identity: ResourceIdentity, ctx: CallContext, result: StaleResult
    ) -> None:
        try:
            await bounded(self.client.delete(identity), ctx.timeout, f"delete {identity}")
            logger.info(f"Deleted stale {identity}")
        except APIError as e:
            logger.warning(f"Failed to delete stale {identity}: {e}")
            result.errors.append(DocumentError(-1, identity, e))
