from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class UnsupportedPatch(ValueError):
    """Raised for update operators the document stores do not implement."""


__all__ = ["ConstraintViolation", "UnsupportedPatch"]
