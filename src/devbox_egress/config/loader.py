"""Configuration loading and validation."""

import os
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError

from devbox_egress.config.schema import EgressConfig

DEFAULT_CONFIG_PATH = Path.home() / ".devbox" / "egress.yaml"

DATA_DIR_ENV = "DEVBOX_DATA_DIR"


class ConfigError(Exception):
    """Configuration loading or validation error."""


def load_config(path: Optional[Path] = None) -> EgressConfig:
    """Load and validate egress configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries default location.
              If file doesn't exist, returns default config.

    Returns:
        Validated configuration object. ``DEVBOX_DATA_DIR`` overrides
        ``data_dir`` when set.

    Raises:
        ConfigError: If config file exists but is invalid
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH

    config_data: dict = {}
    if path.exists():
        try:
            with open(path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigError(f"Expected a mapping at the top of {path}")

    data_dir = os.environ.get(DATA_DIR_ENV)
    if data_dir:
        config_data = {**config_data, "data_dir": data_dir}

    try:
        return EgressConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def save_config(config: EgressConfig, path: Optional[Union[str, Path]] = None) -> None:
    """Save configuration to YAML file.

    Args:
        config: Configuration object to save
        path: Destination path (string or Path object). If None, uses default location.
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH
    elif isinstance(path, str):
        path = Path(path)

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
