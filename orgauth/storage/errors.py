from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base for failures raised by the durable stores."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness or foreign-key constraint rejected the write.

    ``field`` names the offending column when the backend reports it.
    """

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["StorageError", "ConstraintViolation"]
