"""Cache exception hierarchy."""


class CacheError(Exception):
    """Base exception for all cache errors."""


class StorageUnavailableError(CacheError):
    """The durable store could not be reached or rejected the operation."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"[{operation}] {message}")


class InvalidCacheArgumentError(CacheError, ValueError):
    """Rejected at the call boundary before touching the store."""
