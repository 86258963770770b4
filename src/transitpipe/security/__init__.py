"""Helpers for keeping credentials out of logs."""

from .mask import mask, redact_params, safe_for_log

__all__ = ["mask", "safe_for_log", "redact_params"]
