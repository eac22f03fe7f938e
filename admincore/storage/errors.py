from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class MenuCycleError(ConstraintViolation):
    """Raised when a parent assignment would close a loop in the menu tree."""


class MenuDepthError(ConstraintViolation):
    """Raised when a menu would sit deeper than the configured maximum."""


__all__ = ["ConstraintViolation", "MenuCycleError", "MenuDepthError"]
