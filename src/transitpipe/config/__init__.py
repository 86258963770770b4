# SPDX-License-Identifier: Apache-2.0
"""Configuration management for transitpipe."""

from .loader import ConfigVersionError, load_config, validate_credentials
from .settings import (
    API_KEY_ENV,
    CURRENT_CONFIG_VERSION,
    MIN_SUPPORTED_VERSION,
    CacheSettings,
    FeedSettings,
    MetricsSettings,
    RetrySettings,
    SourceSettings,
    TransitPipeConfig,
)

__all__ = [
    "TransitPipeConfig",
    "FeedSettings",
    "RetrySettings",
    "SourceSettings",
    "CacheSettings",
    "MetricsSettings",
    "API_KEY_ENV",
    "CURRENT_CONFIG_VERSION",
    "MIN_SUPPORTED_VERSION",
    "load_config",
    "validate_credentials",
    "ConfigVersionError",
]
