"""Exceptions and structured failure types shared across the gacha engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class GachaBotError(Exception):
    """Base class for unexpected gacha bot failures."""


class StorageError(GachaBotError):
    """Raised when the persistence layer cannot read or write a document."""


class ProviderError(GachaBotError):
    """Raised by catalog providers when an upstream request fails."""


class ErrorKind(str, Enum):
    INSUFFICIENT_RESOURCE = "insufficient_resource"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"
    STALE_STATE = "stale_state"
    VALIDATION = "validation"
    PROVIDER_DEGRADED = "provider_degraded"


@dataclass
class OperationResult:
    """Common base for engine results.

    Expected failures are reported through ``error``/``error_kind`` instead
    of exceptions so the command layer can show them directly.
    """

    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def fail(self, kind: ErrorKind, message: str):
        self.error = message
        self.error_kind = kind
        return self


__all__ = [
    "ErrorKind",
    "GachaBotError",
    "OperationResult",
    "ProviderError",
    "StorageError",
]
