# protection_engine/errors.py
# Exception hierarchy shared by every component of the engine.


class ProtectionEngineError(Exception):
    """Base class for all engine errors."""


class StoreError(ProtectionEngineError):
    """A KV store operation failed."""

    def __init__(self, backend: str, message: str, cause: Exception | None = None):
        self.backend = backend
        self.cause   = cause
        detail = f"[{backend}] {message}"
        if cause is not None:
            detail += f": {cause}"
        super().__init__(detail)


class StoreUnavailable(StoreError):
    """The backend could not be reached (network, timeout, connection refused)."""


class StoreNotImplemented(StoreError):
    """The backend does not support the requested operation."""


class InvalidEventError(ProtectionEngineError, ValueError):
    """A malformed event was rejected before reaching storage."""
