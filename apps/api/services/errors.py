"""Domain error contract shared by the billing services."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    INVALID_PARAMETER = "invalid_parameter"
    NOT_FOUND = "not_found"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ERROR = "error"


class ServiceError(RuntimeError):
    """Raised by service functions; the API layer maps ``kind`` to a status code."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"ServiceError(kind={self.kind.value!r}, message={self.message!r})"
