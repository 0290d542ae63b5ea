"""Error taxonomy for the directive engine.

Every error carries a stable ``kind`` (the class name) that is persisted in
``directives.error`` and used for retry classification:

- ``ValidationError``: bad input, never retried
- ``UnknownDirectiveType``: no handler for the directive type, never retried
- ``HandlerError``: domain failure, retried up to ``max_attempts``
- ``StorageError``: transient database failure, surfaced for redelivery
- ``EmitError``: Signal Bus failure, always logged and swallowed
- ``ReplayError``: a signal could not be replayed
"""
from __future__ import annotations

from typing import Any, Optional


class EngineError(Exception):
    """Base class for all directive engine errors."""

    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(EngineError):
    """Raised for invalid input (bad names, oversize payloads, bad bounds)."""


class UnknownDirectiveType(EngineError):
    """Raised when a directive kind has no registered handler."""


class HandlerError(EngineError):
    """A handler reported (or raised) a domain failure."""

    retryable = True

    def __init__(self, message: str, *, kind: str = "HandlerError", retryable: bool = True,
                 details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)
        self._kind = kind
        self.retryable = retryable

    @property
    def kind(self) -> str:
        return self._kind


class StorageError(EngineError):
    """Wraps a database failure; callers should redeliver later."""

    retryable = True


class EmitError(EngineError):
    """A signal could not be persisted."""


class ReplayError(EngineError):
    """A signal could not be re-delivered to fan-out consumers."""


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Render an exception as the durable ``{kind, message, retryable, details}`` map.

    Example:
        >>> error_payload(ValidationError("payload too large"))["kind"]
        'ValidationError'
    """
    if isinstance(exc, EngineError):
        return {
            "kind": exc.kind,
            "message": exc.message or exc.kind,
            "retryable": bool(exc.retryable),
            "details": exc.details,
        }
    message = str(exc).strip() or type(exc).__name__
    return {"kind": type(exc).__name__, "message": message, "retryable": True, "details": {}}
