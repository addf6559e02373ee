"""Shared utilities for CLI commands.

This module provides console output, error handling and the
configuration and cluster plumbing every command needs.
"""

from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from addon_forge.config import CONFIG_PATH, EngineConfig, configure_logging, load_config
from addon_forge.core.errors import EngineError
from addon_forge.core.reports import ClusterReport, ReportAction

# Shared console instance for consistent output
console = Console()

_ACTION_STYLES = {
    ReportAction.CREATE: "green",
    ReportAction.INSTALL: "green",
    ReportAction.UPDATE: "cyan",
    ReportAction.UPGRADE: "cyan",
    ReportAction.DELETE: "yellow",
    ReportAction.UNINSTALL: "yellow",
    ReportAction.CONFLICT: "magenta",
    ReportAction.ERROR: "red",
    ReportAction.NO_ACTION: "dim",
}


def handle_error(message: str, details: str | None = None, exit_code: int = 1) -> None:
    """Handle an error by printing a message and exiting.

    Args:
        message: Error message to display
        details: Optional additional details
        exit_code: Exit code to use
    """
    console.print(f"\n[bold red]❌ {message}[/bold red]\n")
    if details:
        console.print(Panel(details, title="Details", border_style="red"))
    raise typer.Exit(exit_code)


def print_header(title: str, style: str = "blue") -> None:
    """Print a styled header panel.

    Args:
        title: Header title text
        style: Border style color
    """
    console.print(
        Panel.fit(
            f"[bold {style}]{title}[/bold {style}]",
            border_style=style,
        )
    )


def with_error_handling(func: Callable[..., None]) -> Callable[..., None]:
    """Decorator to wrap command functions with standard error handling.

    Catches engine and configuration errors and formats them consistently.

    Args:
        func: The command function to wrap

    Returns:
        Wrapped function with error handling
    """

    @wraps(func)
    def wrapper(*args: object, **kwargs: object) -> None:
        try:
            func(*args, **kwargs)
        except EngineError as e:
            handle_error(e.message, e.details)
        except (ValueError, FileNotFoundError) as e:
            handle_error(str(e))
        except KeyboardInterrupt:
            console.print("\n[dim]Operation cancelled by user.[/dim]")
            raise typer.Exit(130) from None

    return wrapper


def load_engine_config(config_path: Path | None, verbose: bool = False) -> EngineConfig:
    """Load the configuration and set up logging.

    An explicit path must exist; the default path is optional.
    """
    if config_path is not None:
        config = load_config(config_path)
    elif CONFIG_PATH.exists():
        config = load_config(CONFIG_PATH)
    else:
        config = EngineConfig()
    configure_logging("DEBUG" if verbose else config.log_level)
    return config


def read_yaml(path: Path) -> Any:
    """Read a YAML input file.

    Raises:
        ValueError: If the file is not valid YAML
    """
    try:
        return yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing {path}: {e}") from e


def print_report(report: ClusterReport) -> None:
    """Render a cluster report as tables."""
    title = f"{report.cluster}{' (dry run)' if report.dry_run else ''}"

    if report.resource_reports:
        table = Table(title=f"Resources on {title}")
        table.add_column("Action")
        table.add_column("Resource")
        table.add_column("Message", style="dim")
        for entry in report.resource_reports:
            style = _ACTION_STYLES.get(entry.action, "")
            table.add_row(
                f"[{style}]{entry.action}[/{style}]",
                str(entry.resource) if entry.resource else "-",
                entry.message,
            )
        console.print(table)

    if report.release_reports:
        table = Table(title=f"Helm releases on {title}")
        table.add_column("Action")
        table.add_column("Release")
        table.add_column("Chart version")
        table.add_column("Status")
        table.add_column("Message", style="dim")
        for release in report.release_reports:
            style = _ACTION_STYLES.get(release.action, "")
            table.add_row(
                f"[{style}]{release.action}[/{style}]",
                f"{release.release_namespace}/{release.release_name}",
                release.chart_version,
                str(release.status),
                release.message,
            )
        console.print(table)

    if not report.resource_reports and not report.release_reports:
        console.print("[dim]Nothing to report.[/dim]")
