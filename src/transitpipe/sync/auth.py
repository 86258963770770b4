# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import abc
from typing import Optional


class AuthStrategy(abc.ABC):
    """Base class for authentication strategies."""

    secret: Optional[str] = None

    @abc.abstractmethod
    def apply(self, headers: dict[str, str], params: dict[str, str]) -> None:
        """Add auth information to request headers or params."""
        ...


class NoAuth(AuthStrategy):
    """Open data endpoints take no credential."""

    def apply(self, headers: dict[str, str], params: dict[str, str]) -> None:
        return None


class ApiKeyParamAuth(AuthStrategy):
    """Credential passed as a query parameter (``?api-key=...``)."""

    def __init__(self, api_key: str, param: str = "api-key") -> None:
        self.secret = api_key
        self.param = param

    def apply(self, headers: dict[str, str], params: dict[str, str]) -> None:
        params[self.param] = self.secret


__all__ = ["AuthStrategy", "NoAuth", "ApiKeyParamAuth"]
