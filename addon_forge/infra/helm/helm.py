"""Helm command abstractions.

This module provides commands for Helm release management:
install/upgrade, uninstall and release queries.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

from addon_forge.core.errors import HelmError
from addon_forge.infra.k8s.utils import parse_timeout

from .types import CommandResult, HelmRelease

if TYPE_CHECKING:
    from .runner import CommandRunner

OCI_PREFIX = "oci://"

# Extra seconds the process gets beyond helm's own --timeout
COMMAND_GRACE_SECONDS = 30.0


def chart_reference(repository: str, chart_name: str) -> tuple[str, str | None]:
    """Resolve a chart location into helm arguments.

    Args:
        repository: Classic repository URL or an oci:// registry path
        chart_name: Chart name within the repository

    Returns:
        (chart argument, value for --repo or None)
    """
    if repository.startswith(OCI_PREFIX):
        return f"{repository.rstrip('/')}/{chart_name}", None
    if not repository:
        return chart_name, None
    return chart_name, repository


class HelmCommands:
    """Helm-related shell commands.

    Provides operations for:
    - Release management (install, upgrade, uninstall)
    - Status queries (list releases)
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        binary: str = "helm",
        kubeconfig: str | None = None,
        kube_context: str | None = None,
    ) -> None:
        """Initialize Helm commands.

        Args:
            runner: Command runner for executing shell commands
            binary: Helm executable
            kubeconfig: Kubeconfig path passed to every command
            kube_context: Kubeconfig context passed to every command
        """
        self._runner = runner
        self._binary = binary
        self._kubeconfig = kubeconfig
        self._kube_context = kube_context

    def _base(self, *args: str) -> list[str]:
        cmd = [self._binary, *args]
        if self._kubeconfig:
            cmd.extend(["--kubeconfig", self._kubeconfig])
        if self._kube_context:
            cmd.extend(["--kube-context", self._kube_context])
        return cmd

    # =========================================================================
    # Release Management
    # =========================================================================

    def upgrade_install(
        self,
        release_name: str,
        chart: str,
        namespace: str,
        *,
        version: str | None = None,
        repo: str | None = None,
        value_files: list[Path] | None = None,
        labels: dict[str, str] | None = None,
        timeout: str = "10m",
        wait: bool = True,
    ) -> CommandResult:
        """Deploy or upgrade a Helm release.

        Uses `helm upgrade --install` to idempotently deploy a chart.
        The target namespace must already exist.

        Args:
            release_name: Name for the Helm release
            chart: Chart name, or a full oci:// reference
            namespace: Kubernetes namespace for deployment
            version: Chart version constraint
            repo: Classic chart repository URL
            value_files: Values files, later files take precedence
            labels: Labels Helm stores on the release's storage Secrets
            timeout: Maximum time to wait for deployment
            wait: Whether to wait for resources to be ready

        Returns:
            CommandResult with deployment status

        Example:
            >>> helm.upgrade_install(
            ...     "cert-manager",
            ...     "cert-manager",
            ...     "cert-manager",
            ...     version="v1.14.0",
            ...     repo="https://charts.jetstack.io",
            ... )
        """
        cmd = self._base(
            "upgrade",
            "--install",
            release_name,
            chart,
            "--namespace",
            namespace,
        )
        if repo:
            cmd.extend(["--repo", repo])
        if version:
            cmd.extend(["--version", version])
        if wait:
            cmd.append("--wait")
        cmd.extend(["--timeout", timeout])
        if labels:
            cmd.extend(["--labels", ",".join(f"{k}={v}" for k, v in sorted(labels.items()))])

        for vf in value_files or []:
            cmd.extend(["-f", str(vf)])

        return self._runner.run(
            cmd, capture_output=True, timeout=parse_timeout(timeout) + COMMAND_GRACE_SECONDS
        )

    def uninstall(
        self,
        release_name: str,
        namespace: str,
        *,
        wait: bool = True,
        timeout: str = "10m",
    ) -> CommandResult:
        """Uninstall a Helm release.

        Args:
            release_name: Name of the release to uninstall
            namespace: Kubernetes namespace
            wait: Whether to wait for resources to be deleted
            timeout: Maximum time to wait for deletion

        Returns:
            CommandResult with uninstall status
        """
        cmd = self._base("uninstall", release_name, "-n", namespace)
        if wait:
            cmd.append("--wait")
        cmd.extend(["--timeout", timeout])
        return self._runner.run(cmd, timeout=parse_timeout(timeout) + COMMAND_GRACE_SECONDS)

    # =========================================================================
    # Status Queries
    # =========================================================================

    def list_releases(self, namespace: str, *, timeout: float = 60.0) -> list[HelmRelease]:
        """List Helm releases in a namespace, in every state.

        Unlike install and uninstall, a failed listing raises: callers
        cannot tell "no releases" apart from "unknown".

        Args:
            namespace: Kubernetes namespace to query
            timeout: Seconds before the listing is abandoned

        Returns:
            List of HelmRelease objects

        Raises:
            HelmError: If helm fails or prints something other than JSON
        """
        cmd = self._base("list", "-n", namespace, "--all", "-o", "json")

        result = self._runner.run(cmd, timeout=timeout)
        if not result.success:
            raise HelmError(
                f"Failed to list Helm releases in {namespace}", result.stderr.strip()
            )
        if not result.stdout.strip():
            return []

        try:
            releases_data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise HelmError(f"Unexpected helm list output in {namespace}", str(e)) from e

        return [
            HelmRelease(
                name=r.get("name", ""),
                namespace=r.get("namespace", namespace),
                status=r.get("status", ""),
                revision=str(r.get("revision", "")),
                chart=r.get("chart", ""),
                app_version=r.get("app_version", ""),
            )
            for r in releases_data or []
        ]
