"""Typed failures raised by the custody registry.

Every failure is a deterministic precondition violation scoped to the single
call that raised it. The ``code`` attribute is stable and is what log records
carry as ``error_code``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RegistryError(Exception):
    """Base class for registry failures."""

    code = "RegistryError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class Unauthorized(RegistryError):
    """Caller lacks the capability (only the admin may authorize participants)."""
    code = "Unauthorized"


class NotAuthorized(RegistryError):
    """Identity is not in the authorized participant set."""
    code = "NotAuthorized"


class NotFound(RegistryError):
    """Referenced product id does not exist."""
    code = "NotFound"


class NotOwner(RegistryError):
    """Caller does not hold current custody of the product."""
    code = "NotOwner"


class RecipientNotAuthorized(RegistryError):
    """Transfer recipient is not an authorized participant."""
    code = "RecipientNotAuthorized"


class SelfTransfer(RegistryError):
    """Transfer recipient is the current owner."""
    code = "SelfTransfer"


class AlreadyAuthorized(RegistryError):
    """Target identity has already been authorized."""
    code = "AlreadyAuthorized"


class InvalidTarget(RegistryError):
    """Target identity is empty or not a string."""
    code = "InvalidTarget"


class AlreadyInitialized(RegistryError):
    """History for a product id was initialized twice."""
    code = "AlreadyInitialized"


class IntegrityError(RegistryError):
    """A stored history chain failed digest verification."""
    code = "IntegrityError"


__all__ = [
    "RegistryError",
    "Unauthorized",
    "NotAuthorized",
    "NotFound",
    "NotOwner",
    "RecipientNotAuthorized",
    "SelfTransfer",
    "AlreadyAuthorized",
    "InvalidTarget",
    "AlreadyInitialized",
    "IntegrityError",
]
