# SPDX-License-Identifier: Apache-2.0
"""Configuration loader with version validation and credential checks."""

from __future__ import annotations

import logging
import os
import warnings
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from transitpipe.errors import ConfigurationError

from .settings import (
    API_KEY_ENV,
    CURRENT_CONFIG_VERSION,
    MIN_SUPPORTED_VERSION,
    TransitPipeConfig,
)

PathLike = Union[str, Path]

logger = logging.getLogger(__name__)

# Values shipped in sample configs that must never reach the remote API
_PLACEHOLDER_PREFIXES = ("YOUR_", "your_", "<", "changeme")


class ConfigVersionError(ConfigurationError):
    """Error when configuration version is incompatible."""

    pass


def load_config(path: Optional[PathLike] = None, env_file: Optional[PathLike] = ".env") -> TransitPipeConfig:
    """Load and validate configuration.

    Args:
        path: YAML configuration file. ``None`` returns the defaults.
        env_file: ``.env`` file loaded into the environment (missing files are ignored).

    Returns:
        TransitPipeConfig instance

    Raises:
        ConfigVersionError: If config version is missing, too old, or incompatible
        ConfigurationError: If the file is missing, not valid YAML, or fails validation
    """
    if env_file is not None and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    if path is None:
        return TransitPipeConfig()

    yaml_path = Path(path)
    if not yaml_path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        expanded_content = os.path.expandvars(yaml_path.read_text(encoding="utf-8"))
        cfg_dict = yaml.safe_load(expanded_content) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e

    if not isinstance(cfg_dict, dict):
        raise ConfigurationError("YAML file must contain a mapping at the root level")

    normalized_data = _normalize_keys(cfg_dict)

    ver = str(normalized_data.get("config_version", ""))
    if not ver:
        raise ConfigVersionError(
            'config_version missing. Add `config_version: "1"` to your YAML.'
        )
    if ver < MIN_SUPPORTED_VERSION:
        raise ConfigVersionError(
            f"Config version {ver} is too old. Minimum supported is {MIN_SUPPORTED_VERSION}."
        )
    if ver > CURRENT_CONFIG_VERSION:
        warnings.warn(
            f"This build understands config_version {CURRENT_CONFIG_VERSION}, "
            f"but file is {ver}. Attempting best-effort parse.",
            UserWarning,
            stacklevel=2,
        )

    try:
        return TransitPipeConfig(**normalized_data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def _normalize_keys(data: Any) -> Any:
    """Recursively convert kebab-case keys to snake_case.

    Feed ids under ``feeds`` are names, not fields, and are left untouched.
    """
    if not isinstance(data, dict):
        return data

    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        new_key = key.replace("-", "_") if isinstance(key, str) else key
        if new_key == "feeds" and isinstance(value, dict):
            normalized[new_key] = {
                feed_id: _normalize_keys(feed_cfg or {}) for feed_id, feed_cfg in value.items()
            }
        else:
            normalized[new_key] = _normalize_keys(value)
    return normalized


def validate_credentials(config: TransitPipeConfig, feed_ids: Iterable[str]) -> None:
    """Fail fast when a credentialed feed has no usable API key.

    Raises:
        ConfigurationError: naming the first feed that cannot run.
    """
    from transitpipe.sync.feeds import FEEDS

    api_key = config.resolve_api_key()
    for feed_id in feed_ids:
        spec = FEEDS[feed_id]
        if not spec.requires_api_key:
            continue
        if not api_key:
            raise ConfigurationError(
                f"Feed '{feed_id}' requires an API key. Set {API_KEY_ENV} in the "
                "environment or .env file, or `api_key` in the config.",
                feed_id=feed_id,
            )
        if api_key.startswith(_PLACEHOLDER_PREFIXES):
            raise ConfigurationError(
                f"Feed '{feed_id}': {API_KEY_ENV} still holds a placeholder value.",
                feed_id=feed_id,
            )
    logger.debug("Credentials present for feeds requiring them")
