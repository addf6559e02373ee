"""Command runner for executing helm.

This module provides the subprocess layer used by HelmCommands.
"""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from .types import CommandResult

# Exit status reported when a command outlives its timeout, as timeout(1) does
TIMEOUT_RETURNCODE = 124


class CommandRunner:
    """Low-level command executor with consistent result handling.

    A missing binary or an expired timeout is reported as a failed
    CommandResult rather than an exception so that callers handle every
    failure the same way.
    """

    def __init__(self, cwd: Path | None = None) -> None:
        """Initialize the command runner.

        Args:
            cwd: Working directory for commands (defaults to the process cwd)
        """
        self.cwd = cwd

    def run(
        self,
        cmd: Sequence[str],
        *,
        capture_output: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute a command and return a structured result.

        Args:
            cmd: Command and arguments as a sequence
            capture_output: Whether to capture stdout/stderr
            timeout: Seconds before the command is killed; None waits forever

        Returns:
            CommandResult with success status, output, and return code
        """
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                list(cmd),
                cwd=self.cwd,
                capture_output=capture_output,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(success=False, stderr=str(e), returncode=127)
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out after {timeout}s: {cmd[0]}")
            return CommandResult(
                success=False,
                stderr=f"{cmd[0]} timed out after {timeout}s",
                returncode=TIMEOUT_RETURNCODE,
            )
        return CommandResult(
            success=result.returncode == 0,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            returncode=result.returncode,
        )
