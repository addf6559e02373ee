"""Helm release reconciliation.

Drives every desired ReleaseSpec of one cluster through the release state
machine (NotInstalled, Managed, Unmanaged, Failed) and uninstalls managed
releases that are no longer desired. Releases installed by anyone else are
reported but never touched.
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import yaml
from loguru import logger

from addon_forge.config import EngineConfig
from addon_forge.infra.helm import COMMAND_GRACE_SECONDS, HelmRelease, chart_reference
from addon_forge.infra.k8s.utils import bounded, parse_timeout

from ..constants import DEFAULT_CONSTANTS
from ..errors import APIError, HelmError
from ..hashing import helm_hash
from ..models import (
    CallContext,
    GroupVersionKind,
    ReleaseRecord,
    ReleaseSpec,
    ReleaseStatus,
    SyncMode,
)
from ..reports import ClusterReport, ReleaseReport, ReportAction

if TYPE_CHECKING:
    from addon_forge.infra.helm import HelmCommands
    from addon_forge.infra.k8s.client import ClusterClient, Object

SECRET_GVK = GroupVersionKind(version="v1", kind="Secret")

_LABEL_VALUE_INVALID = re.compile(r"[^A-Za-z0-9_.-]")
_EXACT_VERSION = re.compile(r"^v?\d+\.\d+\.\d+([-+][0-9A-Za-z.+-]+)?$")


def label_value(value: str) -> str:
    """Coerce an arbitrary string into a valid Kubernetes label value."""
    return _LABEL_VALUE_INVALID.sub("_", value)[:63].strip("_.-")


@dataclass
class NamespaceState:
    """Releases found in one namespace and which of them this engine owns."""

    releases: dict[str, HelmRelease] = field(default_factory=dict)
    owned: set[str] = field(default_factory=set)
    error: str | None = None


@dataclass
class HelmReconcileResult:
    """Outcome of reconciling every Helm release of one cluster.

    Attributes:
        records: Records to persist, keyed by "namespace/name"; records of
            uninstalled releases are absent
        report: One entry per referenced release plus unmanaged ones found
            alongside them
    """

    records: dict[str, ReleaseRecord]
    report: ClusterReport

    @property
    def failed(self) -> list[ReleaseRecord]:
        return [r for r in self.records.values() if r.status == ReleaseStatus.FAILED]


class HelmReconciler:
    """Installs, upgrades and uninstalls Helm releases for one cluster.

    Ownership is read from Helm's own storage Secrets: every install and
    upgrade passes ``--labels`` carrying this engine's marker, and Helm
    copies those labels onto the release revision's Secret.

    Attributes:
        helm: Helm CLI wrapper for the target cluster
        client: Cluster client for the same cluster
        config: Read-only configuration snapshot
    """

    def __init__(
        self,
        helm: HelmCommands,
        client: ClusterClient,
        config: EngineConfig | None = None,
    ) -> None:
        self.helm = helm
        self.client = client
        self.config = config or EngineConfig()

    # =========================================================================
    # State machine predicates
    # =========================================================================

    def should_install(self, spec: ReleaseSpec, release: HelmRelease | None) -> bool:
        """A release is installed when its name is free in the target namespace."""
        return release is None

    def should_upgrade(
        self,
        spec: ReleaseSpec,
        record: ReleaseRecord | None,
        release: HelmRelease | None,
        owned: bool,
    ) -> bool:
        """An owned release is upgraded when its values or chart version changed.

        The installed chart is only compared when the spec pins an exact
        version; a range such as "^1.14" is resolved by helm at install time.
        """
        if release is None or not owned:
            return False
        if record is None or record.last_applied_values_hash != helm_hash(spec):
            return True
        if not release.chart or not _EXACT_VERSION.match(spec.chart_version):
            return False
        return not release.chart.endswith(f"-{spec.chart_version}")

    def should_uninstall(
        self,
        record: ReleaseRecord,
        desired_keys: set[str],
        release: HelmRelease | None,
        owned: bool,
    ) -> bool:
        """A managed release is uninstalled once no desired spec references it."""
        if record.key in desired_keys or release is None or not owned:
            return False
        return record.status in (ReleaseStatus.MANAGED, ReleaseStatus.FAILED)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(
        self,
        cluster: str,
        desired_specs: list[ReleaseSpec],
        records: dict[str, ReleaseRecord],
        sync_mode: SyncMode = SyncMode.CONTINUOUS,
        ctx: CallContext | None = None,
    ) -> HelmReconcileResult:
        """Reconcile the Helm releases of one cluster.

        Args:
            cluster: Reference of the target cluster
            desired_specs: Releases that should exist
            records: Records from the previous reconciliation, by key
            sync_mode: DryRun predicts actions without calling helm
            ctx: Timeout and cancellation for cluster calls

        Returns:
            HelmReconcileResult with the next records and the cluster report
        """
        ctx = ctx or CallContext(timeout=self.config.api_timeout_seconds)
        dry_run = sync_mode == SyncMode.DRY_RUN
        report = ClusterReport(cluster=cluster, dry_run=dry_run)
        next_records = dict(records)
        desired_keys = {spec.key for spec in desired_specs}

        namespaces = {spec.release_namespace for spec in desired_specs} | {
            record.spec.release_namespace for record in records.values()
        }
        states = {ns: await self._scan_namespace(ns, ctx) for ns in sorted(namespaces)}

        for spec in desired_specs:
            if ctx.cancelled:
                logger.info(f"Helm reconciliation of {cluster} cancelled")
                return HelmReconcileResult(records=next_records, report=report)
            record, entry = await self._reconcile_release(
                cluster, spec, records.get(spec.key), states[spec.release_namespace], dry_run
            )
            report.release_reports.append(entry)
            if not dry_run:
                next_records[spec.key] = record

        for key, record in sorted(records.items()):
            if key in desired_keys:
                continue
            if ctx.cancelled:
                logger.info(f"Helm reconciliation of {cluster} cancelled")
                return HelmReconcileResult(records=next_records, report=report)
            remaining, entry = await self._retire_release(
                record, desired_keys, states[record.spec.release_namespace], dry_run
            )
            if entry is not None:
                report.release_reports.append(entry)
            if not dry_run:
                if remaining is None:
                    next_records.pop(key, None)
                else:
                    next_records[key] = remaining

        self._report_unmanaged(states, desired_keys, set(records), report)
        return HelmReconcileResult(
            records=records if dry_run else next_records, report=report
        )

    async def _reconcile_release(
        self,
        cluster: str,
        spec: ReleaseSpec,
        record: ReleaseRecord | None,
        state: NamespaceState,
        dry_run: bool,
    ) -> tuple[ReleaseRecord, ReleaseReport]:
        durable = record or ReleaseRecord(spec=spec)

        if state.error is not None:
            return self._failed(durable, spec, state.error)

        release = state.releases.get(spec.release_name)
        owned = spec.release_name in state.owned

        if self.should_install(spec, release):
            return await self._apply(cluster, spec, durable, ReportAction.INSTALL, dry_run)

        if not owned:
            logger.warning(
                f"Helm release {spec.key} exists but is not managed by "
                f"{DEFAULT_CONSTANTS.HELM_MANAGER_NAME}; leaving it alone"
            )
            unmanaged = durable.model_copy(
                update={
                    "spec": spec,
                    "status": ReleaseStatus.UNMANAGED,
                    "failure_message": None,
                }
            )
            return unmanaged, self._entry(
                spec,
                ReleaseStatus.UNMANAGED,
                ReportAction.CONFLICT,
                "release exists and is not managed by this engine",
                chart_version=release.chart_version if release else "",
            )

        if self.should_upgrade(spec, record, release, owned):
            return await self._apply(cluster, spec, durable, ReportAction.UPGRADE, dry_run)

        logger.debug(f"Helm release {spec.key} is up to date")
        managed = durable.model_copy(
            update={"spec": spec, "status": ReleaseStatus.MANAGED, "failure_message": None}
        )
        return managed, self._entry(spec, ReleaseStatus.MANAGED, ReportAction.NO_ACTION)

    async def _retire_release(
        self,
        record: ReleaseRecord,
        desired_keys: set[str],
        state: NamespaceState,
        dry_run: bool,
    ) -> tuple[ReleaseRecord | None, ReleaseReport | None]:
        spec = record.spec
        if state.error is not None:
            return self._failed(record, spec, state.error)

        release = state.releases.get(spec.release_name)
        owned = spec.release_name in state.owned
        if not self.should_uninstall(record, desired_keys, release, owned):
            # Gone already, or never ours: forget it
            logger.debug(f"Dropping record of Helm release {spec.key}")
            return None, None

        if dry_run:
            return record, self._entry(
                spec, ReleaseStatus.MANAGED, ReportAction.UNINSTALL, "would uninstall"
            )

        try:
            result = await bounded(
                asyncio.to_thread(
                    self.helm.uninstall,
                    spec.release_name,
                    spec.release_namespace,
                    timeout=self.config.helm_timeout,
                ),
                self._helm_deadline(),
                f"helm uninstall {spec.key}",
            )
        except APIError as e:
            return self._failed(record, spec, f"uninstall failed: {e}")
        if not result.success:
            return self._failed(record, spec, f"uninstall failed: {result.stderr.strip()}")

        logger.info(f"Uninstalled Helm release {spec.key}")
        return None, self._entry(spec, ReleaseStatus.NOT_INSTALLED, ReportAction.UNINSTALL)

    async def _apply(
        self,
        cluster: str,
        spec: ReleaseSpec,
        durable: ReleaseRecord,
        action: ReportAction,
        dry_run: bool,
    ) -> tuple[ReleaseRecord, ReleaseReport]:
        verb = "install" if action == ReportAction.INSTALL else "upgrade"
        if dry_run:
            return durable, self._entry(
                spec, ReleaseStatus.MANAGED, action, f"would {verb} {spec.chart_version}"
            )

        chart, repo = chart_reference(spec.repository, spec.chart_name)
        labels = {
            DEFAULT_CONSTANTS.helm_managed_by_label: DEFAULT_CONSTANTS.HELM_MANAGER_NAME,
            DEFAULT_CONSTANTS.helm_cluster_label: label_value(cluster),
        }
        values_file = self._write_values(spec)
        try:
            result = await bounded(
                asyncio.to_thread(
                    self.helm.upgrade_install,
                    spec.release_name,
                    chart,
                    spec.release_namespace,
                    version=spec.chart_version or None,
                    repo=repo,
                    value_files=[values_file],
                    labels=labels,
                    timeout=self.config.helm_timeout,
                ),
                self._helm_deadline(),
                f"helm {verb} {spec.key}",
            )
        except APIError as e:
            return self._failed(durable, spec, f"{verb} failed: {e}")
        finally:
            values_file.unlink(missing_ok=True)

        if not result.success:
            return self._failed(durable, spec, f"{verb} failed: {result.stderr.strip()}")

        logger.info(f"Helm release {spec.key}: {verb} of {spec.chart_name} {spec.chart_version}")
        record = ReleaseRecord(
            spec=spec,
            last_applied_values_hash=helm_hash(spec),
            status=ReleaseStatus.MANAGED,
        )
        return record, self._entry(spec, ReleaseStatus.MANAGED, action)

    def _failed(
        self, durable: ReleaseRecord, spec: ReleaseSpec, message: str
    ) -> tuple[ReleaseRecord, ReleaseReport]:
        # The last durable hash is kept so the next pass retries from it
        logger.warning(f"Helm release {spec.key}: {message}")
        failed = durable.model_copy(
            update={"status": ReleaseStatus.FAILED, "failure_message": message}
        )
        return failed, self._entry(spec, ReleaseStatus.FAILED, ReportAction.ERROR, message)

    def _entry(
        self,
        spec: ReleaseSpec,
        status: ReleaseStatus,
        action: ReportAction,
        message: str = "",
        *,
        chart_version: str | None = None,
    ) -> ReleaseReport:
        return ReleaseReport(
            release_name=spec.release_name,
            release_namespace=spec.release_namespace,
            chart_version=spec.chart_version if chart_version is None else chart_version,
            status=status,
            action=action,
            message=message,
        )

    def _helm_deadline(self) -> float:
        # Outlasts the runner's own kill deadline for the same command
        return parse_timeout(self.config.helm_timeout) + 2 * COMMAND_GRACE_SECONDS

    def _write_values(self, spec: ReleaseSpec) -> Path:
        fd, path = tempfile.mkstemp(prefix=f"{spec.release_name}-", suffix=".yaml")
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(spec.values, f, default_flow_style=False, sort_keys=True)
        return Path(path)

    # =========================================================================
    # Cluster state
    # =========================================================================

    async def _scan_namespace(self, namespace: str, ctx: CallContext) -> NamespaceState:
        """List a namespace's releases and the storage Secrets marking ownership."""
        try:
            releases = await bounded(
                asyncio.to_thread(self.helm.list_releases, namespace, timeout=ctx.timeout),
                ctx.timeout + COMMAND_GRACE_SECONDS,
                f"list Helm releases in {namespace}",
            )
            secrets = await bounded(
                self.client.list(
                    SECRET_GVK,
                    namespace=namespace,
                    label_selector={DEFAULT_CONSTANTS.HELM_STORAGE_OWNER_LABEL: "helm"},
                ),
                ctx.timeout,
                f"list Helm storage in {namespace}",
            )
        except (HelmError, APIError) as e:
            logger.warning(f"Could not read Helm releases in {namespace}: {e}")
            return NamespaceState(error=str(e))

        return NamespaceState(
            releases={r.name: r for r in releases},
            owned=owned_releases(secrets),
        )

    def _report_unmanaged(
        self,
        states: dict[str, NamespaceState],
        desired_keys: set[str],
        known_keys: set[str],
        report: ClusterReport,
    ) -> None:
        for namespace, state in sorted(states.items()):
            for name, release in sorted(state.releases.items()):
                key = f"{namespace}/{name}"
                if key in desired_keys or key in known_keys or name in state.owned:
                    continue
                report.release_reports.append(
                    ReleaseReport(
                        release_name=name,
                        release_namespace=namespace,
                        chart_version=release.chart_version,
                        status=ReleaseStatus.UNMANAGED,
                        action=ReportAction.NO_ACTION,
                        message="not managed by this engine",
                    )
                )


def owned_releases(secrets: list[Object]) -> set[str]:
    """Names of releases whose latest storage Secret carries the engine marker.

    Args:
        secrets: Helm storage Secrets (label owner=helm) of one namespace

    Returns:
        Release names owned by this engine
    """
    latest: dict[str, tuple[int, dict[str, str]]] = {}
    for secret in secrets:
        labels = secret.get("metadata", {}).get("labels") or {}
        name = labels.get(DEFAULT_CONSTANTS.HELM_STORAGE_NAME_LABEL)
        if not name:
            continue
        try:
            version = int(labels.get(DEFAULT_CONSTANTS.HELM_STORAGE_VERSION_LABEL, "0"))
        except ValueError:
            version = 0
        if name not in latest or version >= latest[name][0]:
            latest[name] = (version, labels)

    return {
        name
        for name, (_, labels) in latest.items()
        if labels.get(DEFAULT_CONSTANTS.helm_managed_by_label)
        == DEFAULT_CONSTANTS.HELM_MANAGER_NAME
    }
