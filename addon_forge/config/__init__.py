"""Engine configuration: model, YAML loader and logging setup."""

from .config_loader import CONFIG_PATH, load_config
from .config_utils import substitute_env_vars
from .logging import configure_logging
from .settings import EngineConfig

__all__ = [
    "CONFIG_PATH",
    "EngineConfig",
    "configure_logging",
    "load_config",
    "substitute_env_vars",
]
