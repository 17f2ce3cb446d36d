"""
Configuration Loader
~~~~~~~~~~~~~~~~~~~~

Reads swapguard.yaml, layers it over the built-in defaults and validates
the result. Relative host paths in a file (the litestream config
directory, the archive directory, the env file and the ledger) are
resolved against the directory holding that file, so a deploy behaves
the same whatever directory it is started from.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import yaml
from pydantic import ValidationError

from swapguard.config.defaults import DEFAULT_CONFIG
from swapguard.config.schema import DeployConfig
from swapguard.exceptions import (
    ConfigFileNotFoundError,
    ConfigValidationError,
)

__all__ = ["load_config", "load_config_from_dict"]

logger = logging.getLogger(__name__)

# (section, key) pairs holding host filesystem paths.
HOST_PATHS = (
    ("storage", "config_dir"),
    ("storage", "archive_dir"),
    ("environment", "env_file"),
    ("ledger", "path"),
)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts, with override taking precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _resolve_paths(merged: dict[str, Any], base_dir: str) -> dict[str, Any]:
    """Anchor relative host paths at ``base_dir``. Returns a new dict."""
    result = dict(merged)
    for section, key in HOST_PATHS:
        values = result.get(section)
        if not isinstance(values, dict):
            continue
        path = values.get(key)
        if not isinstance(path, str) or not path:
            continue
        path = os.path.expanduser(path)
        if not os.path.isabs(path):
            path = os.path.normpath(os.path.join(base_dir, path))
        result[section] = {**values, key: path}
    return result


def load_config(path: str) -> DeployConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Validated DeployConfig instance.

    Raises:
        ConfigFileNotFoundError: If the file doesn't exist.
        ConfigValidationError: If the file is not a YAML mapping or the
            merged configuration fails validation.
    """
    if not os.path.exists(path):
        raise ConfigFileNotFoundError(f"Configuration file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            user_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigValidationError(
            f"Invalid YAML in configuration file: {exc}"
        ) from exc

    if not isinstance(user_config, dict):
        raise ConfigValidationError(
            "Configuration file must contain a mapping, "
            f"got {type(user_config).__name__}"
        )

    base_dir = os.path.dirname(os.path.abspath(path))
    logger.debug("Loaded configuration from %s", path)
    return load_config_from_dict(user_config, base_dir=base_dir)


def load_config_from_dict(
    data: dict[str, Any],
    base_dir: str | None = None,
) -> DeployConfig:
    """
    Merge ``data`` over the defaults and validate it.

    Args:
        data: Configuration dictionary.
        base_dir: Directory that relative host paths are resolved
            against. Left as written when None.

    Raises:
        ConfigValidationError: If validation fails.
    """
    merged = _deep_merge(DEFAULT_CONFIG, data)
    if base_dir is not None:
        merged = _resolve_paths(merged, base_dir)

    try:
        return DeployConfig(**merged)
    except ValidationError as exc:
        raise ConfigValidationError(f"Configuration validation failed: {exc}") from exc
