"""Helm CLI wrapper.

- runner: subprocess execution with structured results
- helm: release management and queries
- types: result dataclasses
"""

from .helm import COMMAND_GRACE_SECONDS, HelmCommands, chart_reference
from .runner import CommandRunner
from .types import CommandResult, HelmRelease, split_chart

__all__ = [
    "COMMAND_GRACE_SECONDS",
    "CommandResult",
    "CommandRunner",
    "HelmCommands",
    "HelmRelease",
    "chart_reference",
    "split_chart",
]
