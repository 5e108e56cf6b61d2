"""
Exception hierarchy for toschat.

Most of the core reports failure through result objects (WriteResult,
OperationResult); these exceptions are for the few places that use
exception flow: session enforcement at the HTTP edge and malformed queue input.
"""

from typing import Any


class TosError(Exception):
    """Base exception for all toschat errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class Unauthorized(TosError):
    """Raised when a session is missing, unknown or expired."""

    status_code = 401


class ValidationError(TosError):
    """Raised when input is rejected locally, before any network attempt."""

    status_code = 400


class RemoteError(TosError):
    """Raised when the remote platform returns an unusable response."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message, {"status_code": status_code})
        self.status_code = status_code
