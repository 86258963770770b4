# SPDX-License-Identifier: Apache-2.0
"""Pydantic configuration models for sync and read-side settings."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PathLike = Union[str, Path]

# Configuration versioning constants
CURRENT_CONFIG_VERSION = "1"
MIN_SUPPORTED_VERSION = "1"

API_KEY_ENV = "TRANSIT_API_KEY"

OPEN_DATA_URL = "https://data.winnipeg.ca/resource/"
TRANSIT_API_URL = "https://api.winnipegtransit.com/v4"


class FeedSettings(BaseModel):
    """Per-feed overrides."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    page_size: Optional[int] = Field(
        default=None, description="Records per page (defaults to the feed's own size)", ge=1
    )
    resource_id: Optional[str] = Field(
        default=None, description="Socrata resource id override"
    )
    start: Optional[str] = Field(
        default=None, description="Initial watermark used when no cursor exists yet"
    )


class RetrySettings(BaseModel):
    """Capped exponential backoff for transient sync failures."""

    model_config = ConfigDict(extra="forbid")

    base_delay: float = Field(default=1.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=60.0, gt=0)
    jitter: float = Field(default=0.2, ge=0.0, le=1.0)
    max_attempts: Optional[int] = Field(
        default=8, description="Consecutive failures before a run gives up (None = never)", ge=1
    )

    @model_validator(mode="after")
    def validate_delays(self) -> RetrySettings:
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must not exceed max_delay")
        return self


class SourceSettings(BaseModel):
    """Remote endpoints and HTTP behaviour."""

    model_config = ConfigDict(extra="forbid")

    open_data_url: str = OPEN_DATA_URL
    transit_api_url: str = TRANSIT_API_URL
    timeout: float = Field(default=30.0, gt=0)
    rate_limit_per_min: Optional[int] = Field(
        default=300, description="Transit API requests per minute"
    )
    snapshot_ttl: float = Field(
        default=300.0, description="Seconds a metadata listing is reused while paging", ge=0
    )
    user_agent: str = "transitpipe/0.1"


class CacheSettings(BaseModel):
    """Aggregate cache sizing and staleness."""

    model_config = ConfigDict(extra="forbid")

    default_ttl: float = Field(default=300.0, gt=0)
    max_entries: int = Field(default=256, ge=1)


class MetricsSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    port: int = Field(default=8000, ge=1, le=65535)


class TransitPipeConfig(BaseModel):
    """Top-level configuration.

    Loaded from YAML (snake_case or kebab-case keys); every field has a
    default so the tool also runs without a config file.
    """

    model_config = ConfigDict(extra="forbid")

    config_version: str = Field(default=CURRENT_CONFIG_VERSION)
    database: str = Field(default="data/transit_data.db", description="SQLite database path")
    feeds: Dict[str, FeedSettings] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    source: SourceSettings = Field(default_factory=SourceSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    api_key: Optional[str] = Field(
        default=None, description=f"Transit API key (falls back to ${API_KEY_ENV})"
    )

    @field_validator("feeds")
    @classmethod
    def validate_feed_ids(cls, v: Dict[str, FeedSettings]) -> Dict[str, FeedSettings]:
        from transitpipe.sync.feeds import FEEDS

        unknown = set(v) - set(FEEDS)
        if unknown:
            raise ValueError(
                f"Unknown feed(s): {sorted(unknown)}. Valid feeds: {sorted(FEEDS)}"
            )
        return v

    @property
    def database_path(self) -> Path:
        return Path(self.database)

    def feed_settings(self, feed_id: str) -> FeedSettings:
        return self.feeds.get(feed_id) or FeedSettings()

    def enabled_feeds(self) -> list[str]:
        from transitpipe.sync.feeds import FEEDS

        return [feed_id for feed_id in FEEDS if self.feed_settings(feed_id).enabled]

    def resolve_api_key(self) -> Optional[str]:
        """Return the configured API key, falling back to the environment."""
        return self.api_key or os.environ.get(API_KEY_ENV) or None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()

    def merge_overrides(self, **overrides: Any) -> TransitPipeConfig:
        """Create a new config with top-level field overrides (None values ignored)."""
        current_data = self.to_dict()
        for key, value in overrides.items():
            if value is not None:
                current_data[key] = value
        return self.__class__(**current_data)
