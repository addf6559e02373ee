"""Feature reconciliation.

Runs the engine once per (cluster, feature) pair: hash gate, render,
deploy, stale collection, and the resulting FeatureRecord. Persisting the
record is the caller's job; the engine only reads the previous one and
returns the next one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

from addon_forge.config import EngineConfig

from .collector import StaleResourceCollector
from .deployer import ResourceDeployer
from .errors import AggregateFailure, APIError, RenderError
from .hashing import resources_hash, should_redeploy
from .models import (
    CallContext,
    DeploymentOutcome,
    DeploymentRequest,
    DocumentError,
    FeatureRecord,
    FeatureSpec,
    FeatureStatus,
    GroupVersionKind,
    OwnershipLabels,
    ResourceIdentity,
    StaleResult,
    SyncMode,
)
from .rendering import (
    ScriptEvaluator,
    TemplateRenderer,
    collect_template_resources,
    render_source,
)
from .reports import ClusterReport

if TYPE_CHECKING:
    from addon_forge.infra.k8s.client import ClusterClient


def split_cluster_ref(cluster: str, default_namespace: str) -> tuple[str, str]:
    """Split a "namespace/name" cluster reference."""
    namespace, _, name = cluster.rpartition("/")
    return namespace or default_namespace, name


@dataclass
class FeatureResult:
    """What one reconciliation of a feature produced.

    Attributes:
        record: Record to persist, or None when the feature left no trace
        report: Per-resource actions (predictions in DryRun mode)
        outcome: Merged deployment outcome of every source
        stale: Stale resources found (deleted unless DryRun)
        skipped: True when nothing changed and no work was done
    """

    record: FeatureRecord | None
    report: ClusterReport
    outcome: DeploymentOutcome = field(default_factory=DeploymentOutcome)
    stale: StaleResult = field(default_factory=StaleResult)
    skipped: bool = False

    @property
    def failed(self) -> bool:
        return self.record is not None and self.record.status == FeatureStatus.FAILED


class FeatureEngine:
    """Deploys a feature's content to one cluster and garbage-collects leftovers.

    Handles:
    - Change detection against the previous record
    - Rendering of template and script sources
    - Deployment of each source's manifests
    - Collection of resources no longer wanted
    - Final undeploy when a feature is removed
    """

    def __init__(
        self,
        client: ClusterClient,
        config: EngineConfig | None = None,
        *,
        renderer: TemplateRenderer | None = None,
        evaluator: ScriptEvaluator | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            client: Cluster client for the target cluster
            config: Read-only configuration snapshot
            renderer: Template collaborator, required for template sources
            evaluator: Script collaborator, required for script sources
        """
        self.client = client
        self.config = config or EngineConfig()
        self.renderer = renderer
        self.evaluator = evaluator
        self.deployer = ResourceDeployer(client, self.config.api_timeout_seconds)
        self.collector = StaleResourceCollector(client, self.config.api_timeout_seconds)

    def _context(self, ctx: CallContext | None) -> CallContext:
        return ctx or CallContext(timeout=self.config.api_timeout_seconds)

    async def reconcile(
        self,
        cluster: str,
        feature: FeatureSpec,
        record: FeatureRecord | None,
        *,
        force: bool = False,
        ctx: CallContext | None = None,
    ) -> FeatureResult:
        """Reconcile one feature on one cluster.

        Args:
            cluster: Reference of the target cluster
            feature: What to deploy
            record: Record from the previous reconciliation, if any
            force: Redeploy even if nothing changed (also resets OneTime)
            ctx: Timeout and cancellation for cluster calls

        Returns:
            FeatureResult with the next record to persist

        Raises:
            DeploymentCancelled: If the caller cancelled mid-batch
        """
        ctx = self._context(ctx)
        dry_run = feature.sync_mode == SyncMode.DRY_RUN
        report = ClusterReport(cluster=cluster, dry_run=dry_run)
        target_namespace = feature.target_namespace or self.config.default_namespace

        try:
            context_objects = await self._context_objects(cluster, feature, ctx)
        except (APIError, RenderError) as e:
            logger.warning(
                f"Could not fetch template resources of {feature.feature_id} on {cluster}: {e}"
            )
            error = DocumentError(-1, None, e)
            report.add_errors([error])
            if dry_run:
                return FeatureResult(record=record, report=report)
            base = record or FeatureRecord(cluster=cluster, feature_id=feature.feature_id)
            failed = base.model_copy(
                update={"status": FeatureStatus.FAILED, "failure_message": str(error)}
            )
            return FeatureResult(record=failed, report=report)

        current_hash = resources_hash(
            feature.sources,
            context_objects,
            target_namespace=target_namespace,
            script_prelude=self.config.script_prelude,
            owner_reference=feature.owner_reference,
        )

        if record is not None and not dry_run and not force:
            if self._is_settled(feature, record, current_hash):
                logger.debug(f"Feature {feature.feature_id} on {cluster} is up to date")
                return FeatureResult(record=record, report=report, skipped=True)

        logger.info(
            f"Reconciling feature {feature.feature_id} on {cluster} "
            f"({feature.sync_mode}, {len(feature.sources)} source(s))"
        )

        outcome = DeploymentOutcome()
        desired: dict[OwnershipLabels, set[ResourceIdentity]] = {}
        unsafe_owners: set[OwnershipLabels] = set()

        for source in feature.sources:
            owner = source.owner
            try:
                manifests = render_source(
                    source,
                    context_objects,
                    renderer=self.renderer,
                    evaluator=self.evaluator,
                    script_prelude=self.config.script_prelude,
                )
            except RenderError as e:
                logger.warning(f"Could not render {owner}: {e}")
                outcome.errors.append(DocumentError(-1, None, e))
                unsafe_owners.add(owner)
                continue

            request = DeploymentRequest(
                source_kind=owner.kind,
                source_name=owner.name,
                source_namespace=owner.namespace,
                target_cluster=cluster,
                sync_mode=feature.sync_mode,
                rendered_manifests=manifests,
                target_namespace=target_namespace,
                owner_reference=feature.owner_reference,
            )
            try:
                source_outcome = await self.deployer.deploy(request, ctx)
            except AggregateFailure as e:
                source_outcome = e.outcome
            outcome.merge(source_outcome)
            report.add_outcome(source_outcome)

            wanted = desired.setdefault(owner, set())
            wanted |= source_outcome.desired
            for error in source_outcome.errors:
                if error.identity is None:
                    # What this document used to declare is unknown
                    unsafe_owners.add(owner)
                else:
                    wanted.add(error.identity)

        previous_owners = record.owners if record else set()
        previous_kinds = record.deployed_resource_kinds if record else set()
        stale = await self._collect(
            previous_owners | set(desired),
            desired,
            previous_kinds,
            unsafe_owners,
            dry_run,
            ctx,
        )
        report.add_stale(stale)

        if dry_run:
            return FeatureResult(record=record, report=report, outcome=outcome, stale=stale)

        # Anything not fully collected stays on the books for the next pass
        owners = set(desired) | unsafe_owners
        kept_kinds: set[GroupVersionKind] = set()
        if stale.errors or unsafe_owners:
            owners |= previous_owners
            kept_kinds = set(previous_kinds)
        next_record = self._next_record(
            cluster,
            feature.feature_id,
            current_hash,
            outcome,
            stale,
            desired,
            owners,
            kept_kinds,
        )
        logger.info(
            f"Feature {feature.feature_id} on {cluster}: {next_record.status} "
            f"(created={len(outcome.created)}, updated={len(outcome.updated)}, "
            f"conflicts={len(outcome.conflicted)}, stale={len(stale.stale)})"
        )
        return FeatureResult(record=next_record, report=report, outcome=outcome, stale=stale)

    async def undeploy(
        self,
        cluster: str,
        record: FeatureRecord,
        *,
        sync_mode: SyncMode = SyncMode.CONTINUOUS,
        ctx: CallContext | None = None,
    ) -> FeatureResult:
        """Remove every resource a feature deployed.

        This is the final pass before a feature's record is discarded.

        Args:
            cluster: Reference of the target cluster
            record: The feature's current record
            sync_mode: DryRun reports without deleting
            ctx: Timeout for cluster calls

        Returns:
            FeatureResult whose record is None once everything is gone
        """
        ctx = self._context(ctx)
        dry_run = sync_mode == SyncMode.DRY_RUN
        report = ClusterReport(cluster=cluster, dry_run=dry_run)
        logger.info(f"Undeploying feature {record.feature_id} from {cluster}")

        stale = await self._collect(
            record.owners, {}, record.deployed_resource_kinds, set(), dry_run, ctx
        )
        report.add_stale(stale)

        if dry_run:
            return FeatureResult(record=record, report=report, stale=stale)
        if not stale.errors:
            logger.info(f"Feature {record.feature_id} removed from {cluster}")
            return FeatureResult(record=None, report=report, stale=stale)

        remaining = {e.identity for e in stale.errors if e.identity is not None}
        next_record = record.model_copy(
            update={
                "status": FeatureStatus.REMOVING,
                "deployed_resource_identities": remaining,
                "failure_message": "; ".join(str(e) for e in stale.errors),
            }
        )
        return FeatureResult(record=next_record, report=report, stale=stale)

    async def _context_objects(
        self, cluster: str, feature: FeatureSpec, ctx: CallContext
    ) -> dict[str, dict[str, Any]]:
        """Merge fetched template resources over the feature's context objects."""
        if not feature.template_resource_refs:
            return feature.context_objects
        cluster_namespace, cluster_name = split_cluster_ref(
            cluster, self.config.default_namespace
        )
        fetched = await collect_template_resources(
            self.client, feature.template_resource_refs, cluster_namespace, cluster_name, ctx
        )
        return {**feature.context_objects, **fetched}

    def _is_settled(
        self, feature: FeatureSpec, record: FeatureRecord, current_hash: str
    ) -> bool:
        if record.status != FeatureStatus.PROVISIONED:
            return False
        if feature.sync_mode == SyncMode.ONE_TIME:
            return True
        return not should_redeploy(record.last_applied_hash, current_hash)

    async def _collect(
        self,
        owners: set[OwnershipLabels],
        desired: dict[OwnershipLabels, set[ResourceIdentity]],
        kinds: set[GroupVersionKind],
        unsafe_owners: set[OwnershipLabels],
        dry_run: bool,
        ctx: CallContext,
    ) -> StaleResult:
        result = StaleResult()
        for owner in sorted(owners, key=str):
            if owner in unsafe_owners:
                logger.warning(f"Skipping stale collection for {owner}: content unknown")
                continue
            result.merge(
                await self.collector.collect_stale(
                    owner, desired.get(owner, set()), kinds, dry_run, ctx
                )
            )
        return result

    def _next_record(
        self,
        cluster: str,
        feature_id: str,
        current_hash: str,
        outcome: DeploymentOutcome,
        stale: StaleResult,
        desired: dict[OwnershipLabels, set[ResourceIdentity]],
        owners: set[OwnershipLabels],
        kept_kinds: set[GroupVersionKind],
    ) -> FeatureRecord:
        leftovers = {e.identity for e in stale.errors if e.identity is not None}
        identities = set().union(*desired.values()) | leftovers
        kinds = {identity.gvk for identity in identities} | kept_kinds
        errors = outcome.errors + stale.errors

        return FeatureRecord(
            cluster=cluster,
            feature_id=feature_id,
            last_applied_hash=current_hash,
            status=FeatureStatus.FAILED if errors else FeatureStatus.PROVISIONED,
            deployed_resource_kinds=kinds,
            deployed_resource_identities=identities,
            owners=owners,
            failure_message="; ".join(str(e) for e in errors) or None,
        )
