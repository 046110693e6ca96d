# src/btq/domain/errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class BTQBaseError(Exception):
    """
    Base domain error.

    The API layer maps these to HTTP responses consistently.
    """
    message: str
    code: str = "BTQ_ERROR"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationError(BTQBaseError):
    code: str = "VALIDATION_ERROR"


@dataclass
class NotFoundError(BTQBaseError):
    code: str = "NOT_FOUND"


@dataclass
class ConflictError(BTQBaseError):
    code: str = "CONFLICT"


@dataclass
class InvalidTransitionError(BTQBaseError):
    """A lifecycle compare-and-swap found the record in an unexpected state."""
    code: str = "INVALID_TRANSITION"
