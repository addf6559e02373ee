"""loguru sink setup for command-line use."""

import sys

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    """Send log records at ``level`` and above to stderr.

    Replaces every sink loguru had before, including its default one.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )
