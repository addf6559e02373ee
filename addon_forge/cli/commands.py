"""Engine commands.

Each command reads its inputs from YAML files, runs one engine
operation against the configured cluster, persists the resulting
records and prints the cluster report.
"""

from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError

from addon_forge.config import EngineConfig
from addon_forge.core.engine import FeatureEngine, FeatureResult
from addon_forge.core.hashing import compute_hash, should_redeploy
from addon_forge.core.helm import HelmReconciler, HelmReconcileResult
from addon_forge.core.models import FeatureSpec, ReleaseSpec, SyncMode
from addon_forge.core.records import YamlFileRecordStore
from addon_forge.infra.helm import CommandRunner, HelmCommands
from addon_forge.infra.k8s import ClusterClient, get_cluster_client, run_sync

from .shared import (
    console,
    load_engine_config,
    print_header,
    print_report,
    read_yaml,
    with_error_handling,
)

# ---------------------------------------------------------------------------
# Common options
# ---------------------------------------------------------------------------

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Configuration file (default: addon-forge.yaml)"),
]
ClusterOption = Annotated[
    str | None,
    typer.Option("--cluster", help="Cluster reference (default: current kube context)"),
]
DryRunOption = Annotated[
    bool,
    typer.Option("--dry-run", help="Report what would change without changing anything"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]


def _client(config: EngineConfig) -> ClusterClient:
    return get_cluster_client(config.kubeconfig, config.context)


async def _cluster_name(client: ClusterClient, cluster: str | None) -> str:
    return cluster or await client.get_current_context()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@with_error_handling
def deploy(
    feature_file: Annotated[Path, typer.Argument(help="Feature definition (YAML)")],
    cluster: ClusterOption = None,
    dry_run: DryRunOption = False,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Redeploy even if nothing changed")
    ] = False,
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Deploy a feature's content sources to a cluster."""
    config = load_engine_config(config_path, verbose)
    try:
        feature = FeatureSpec.model_validate(read_yaml(feature_file))
    except ValidationError as e:
        raise ValueError(f"Invalid feature definition {feature_file}: {e}") from e
    if dry_run:
        feature = feature.model_copy(update={"sync_mode": SyncMode.DRY_RUN})

    client = _client(config)
    store = YamlFileRecordStore(config.record_store_path)
    engine = FeatureEngine(client, config)

    async def _run() -> FeatureResult:
        cluster_name = await _cluster_name(client, cluster)
        print_header(f"Deploying {feature.feature_id} to {cluster_name}")
        record = await store.get_feature(cluster_name, feature.feature_id)
        result = await engine.reconcile(cluster_name, feature, record, force=force)
        if result.record is not None and not result.skipped and not dry_run:
            await store.save_feature(result.record)
        return result

    result = run_sync(_run())
    if result.skipped:
        console.print("[green]✓[/green] Already up to date")
        return
    print_report(result.report)

    if result.failed:
        raise typer.Exit(1)


@with_error_handling
def undeploy(
    feature_id: Annotated[str, typer.Argument(help="Feature to remove")],
    cluster: ClusterOption = None,
    dry_run: DryRunOption = False,
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Remove every resource a feature deployed to a cluster."""
    config = load_engine_config(config_path, verbose)
    client = _client(config)
    store = YamlFileRecordStore(config.record_store_path)
    sync_mode = SyncMode.DRY_RUN if dry_run else SyncMode.CONTINUOUS

    async def _run() -> FeatureResult | None:
        cluster_name = await _cluster_name(client, cluster)
        record = await store.get_feature(cluster_name, feature_id)
        if record is None:
            console.print(f"[yellow]No record of {feature_id} on {cluster_name}[/yellow]")
            return None

        print_header(f"Removing {feature_id} from {cluster_name}", style="yellow")
        result = await FeatureEngine(client, config).undeploy(
            cluster_name, record, sync_mode=sync_mode
        )
        if not dry_run:
            if result.record is None:
                await store.delete_feature(cluster_name, feature_id)
            else:
                await store.save_feature(result.record)
        return result

    result = run_sync(_run())
    if result is None:
        raise typer.Exit(1)
    print_report(result.report)

    if result.record is not None and not dry_run:
        raise typer.Exit(1)


@with_error_handling
def helm_reconcile(
    releases_file: Annotated[
        Path, typer.Argument(help="YAML file with a top-level 'releases' list")
    ],
    cluster: ClusterOption = None,
    dry_run: DryRunOption = False,
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Install, upgrade and uninstall Helm releases to match a release list."""
    config = load_engine_config(config_path, verbose)
    loaded = read_yaml(releases_file) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Invalid release list {releases_file}: expected a mapping")
    try:
        specs = [ReleaseSpec.model_validate(r) for r in loaded.get("releases") or []]
    except ValidationError as e:
        raise ValueError(f"Invalid release list {releases_file}: {e}") from e

    client = _client(config)
    store = YamlFileRecordStore(config.record_store_path)
    helm = HelmCommands(
        CommandRunner(),
        binary=config.helm_binary,
        kubeconfig=config.kubeconfig,
        kube_context=config.context,
    )
    reconciler = HelmReconciler(helm, client, config)

    sync_mode = SyncMode.DRY_RUN if dry_run else SyncMode.CONTINUOUS

    async def _run() -> HelmReconcileResult:
        cluster_name = await _cluster_name(client, cluster)
        print_header(f"Reconciling Helm releases on {cluster_name}")
        records = await store.get_releases(cluster_name)
        result = await reconciler.reconcile(cluster_name, specs, records, sync_mode)
        if not dry_run:
            await store.save_releases(cluster_name, result.records)
        return result

    result = run_sync(_run())
    print_report(result.report)

    if result.failed:
        raise typer.Exit(1)


@with_error_handling
def hash_manifests(
    files: Annotated[list[Path], typer.Argument(help="Manifest files, hashed in order")],
    previous: Annotated[
        str | None,
        typer.Option("--previous", help="Hash to compare against"),
    ] = None,
) -> None:
    """Print the content hash of manifest files."""
    digest = compute_hash(*(path.read_text() for path in files))
    console.print(digest)
    if previous is not None:
        changed = should_redeploy(previous, digest)
        console.print("[yellow]changed[/yellow]" if changed else "[green]unchanged[/green]")
