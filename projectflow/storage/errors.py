from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base for failures raised by the OAuth stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key constraint rejected the write."""


class StoreUnavailable(StorageError):
    """The backing database could not be reached or the statement failed."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]
