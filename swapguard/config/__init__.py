"""swapguard configuration: loading, validation, and defaults."""

from swapguard.config.defaults import DEFAULT_CONFIG
from swapguard.config.loader import load_config, load_config_from_dict
from swapguard.config.schema import DeployConfig

__all__ = [
    "load_config",
    "load_config_from_dict",
    "DeployConfig",
    "DEFAULT_CONFIG",
]
