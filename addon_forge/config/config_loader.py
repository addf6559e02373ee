"""Configuration file loading."""

from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic_core import ValidationError

from .config_utils import substitute_env_vars
from .settings import EngineConfig

CONFIG_PATH = Path("addon-forge.yaml")


def load_config(file_path: Path = CONFIG_PATH, *, processed: bool = True) -> EngineConfig:
    """
    Load the engine configuration from a YAML file.

    Args:
        file_path: Path to the YAML file (default: addon-forge.yaml)
        processed: Whether to substitute ${...} environment variables first

    Returns:
        The validated EngineConfig

    Raises:
        ValueError: If required environment variables are missing, validation fails,
                   or YAML structure is invalid (missing 'config' key)
        FileNotFoundError: If the YAML file doesn't exist

    YAML Structure Requirements:
        The YAML file must have a top-level 'config:' key containing configuration data.
    """
    with open(file_path) as f:
        content = f.read()

    if processed:
        content = substitute_env_vars(content)

    try:
        loaded: dict[str, Any] | None = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML: {e}") from e

    if not isinstance(loaded, dict) or "config" not in loaded:
        raise ValueError("Invalid YAML structure: missing 'config' key")

    try:
        config = EngineConfig(**(loaded["config"] or {}))
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    logger.debug(f"Loaded configuration from {file_path}")
    return config

