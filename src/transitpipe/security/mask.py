"""Masking helpers that keep API keys out of logs and error messages."""

from __future__ import annotations

from typing import Any, Mapping, Optional

SENSITIVE_PARAMS = frozenset({"api-key", "api_key", "apikey", "token", "$$app_token"})


def mask(value: Optional[str], show: int = 4) -> str:
    """Mask a secret string, showing only the last `show` characters.

    Examples:
        >>> mask("ABCD1234EFGH")
        '********EFGH'
        >>> mask("short")
        '***'
        >>> mask(None)
        '***'
    """
    if not value or len(value) <= show + 2:
        return "***"
    if show == 0:
        return "*" * len(value)
    return "*" * (len(value) - show) + value[-show:]


def safe_for_log(msg: str, *secrets: Optional[str]) -> str:
    """Replace every occurrence of the given secrets in `msg` with masked versions.

    Examples:
        >>> safe_for_log("GET /routes.json?api-key=ABCD1234EFGH", "ABCD1234EFGH")
        'GET /routes.json?api-key=********EFGH'
    """
    for secret in secrets:
        if secret:
            msg = msg.replace(secret, mask(secret))
    return msg


def redact_params(params: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of query parameters with credential values masked."""
    return {
        key: mask(str(value)) if key.lower() in SENSITIVE_PARAMS else value
        for key, value in params.items()
    }
