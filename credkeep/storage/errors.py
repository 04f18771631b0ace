from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write broke a uniqueness or reference rule of the credential store.

    ``detail`` names the offending field or id and is safe to return to
    clients; it never carries token values or password hashes.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateRecord(ConstraintViolation):
    """An email or token value is already taken."""


class MissingReference(ConstraintViolation):
    """A token row points at a user that does not exist."""


__all__ = ["ConstraintViolation", "DuplicateRecord", "MissingReference"]
