# SPDX-License-Identifier: Apache-2.0
"""Aggregate cache."""

from .aggregate_cache import AggregateCache, CacheKey, CacheState, CacheStats, cache_key

__all__ = ["AggregateCache", "CacheKey", "CacheState", "CacheStats", "cache_key"]
