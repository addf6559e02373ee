"""Data types for helm command results."""

from __future__ import annotations

import re
from dataclasses import dataclass

__all__ = [
    "CommandResult",
    "HelmRelease",
    "split_chart",
]

# Chart field of `helm list`: "<chart-name>-<version>", names may contain dashes
_CHART_PATTERN = re.compile(r"^(?P<name>.+)-(?P<version>v?\d+\.\d+\.\d+\S*)$")


@dataclass
class CommandResult:
    """Result of a command execution."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


@dataclass
class HelmRelease:
    """Information about a Helm release.

    Attributes:
        name: Release name
        namespace: Kubernetes namespace
        status: Release status (deployed, failed, pending-install, ...)
        revision: Release revision number
        chart: Chart field as printed by helm, e.g. "cert-manager-v1.14.0"
        app_version: Application version of the chart
    """

    name: str
    namespace: str
    status: str
    revision: str
    chart: str = ""
    app_version: str = ""

    @property
    def chart_name(self) -> str:
        return split_chart(self.chart)[0]

    @property
    def chart_version(self) -> str:
        return split_chart(self.chart)[1]


def split_chart(chart: str) -> tuple[str, str]:
    """Split helm's "<name>-<version>" chart field.

    Args:
        chart: Chart field from `helm list -o json`

    Returns:
        (name, version); version is empty when the field carries none
    """
    match = _CHART_PATTERN.match(chart)
    if match is None:
        return chart, ""
    return match.group("name"), match.group("version")
