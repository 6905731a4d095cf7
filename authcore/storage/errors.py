from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the durable store cannot answer within its time budget."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"durable store unavailable during {operation}")
        self.operation = operation
        self.cause = cause


class CacheUnavailable(Exception):
    """Raised when a cache round trip times out or the cache cannot be reached."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"cache unavailable during {operation}")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailable", "CacheUnavailable"]
