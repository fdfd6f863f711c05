"""Custom exception hierarchy for the FamilyBank package."""

from __future__ import annotations

from typing import Dict


class FamilyBankError(Exception):
    """Base class for all FamilyBank specific errors.

    Every error carries a stable machine-readable ``kind`` and a message that
    is safe to show to the person who made the request.
    """

    kind = "error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(FamilyBankError):
    """Raised for malformed or out-of-policy input."""

    kind = "validation"


class ConflictError(FamilyBankError):
    """Raised when an entity is not in the state a transition requires."""

    kind = "conflict"


class InsufficientFundsError(FamilyBankError):
    """Raised when a debit would cross the balance or star floor."""

    kind = "insufficient_funds"


class NotFoundError(FamilyBankError):
    """Raised when a record does not exist inside the caller's family."""

    kind = "not_found"


class AuthorizationError(FamilyBankError):
    """Raised when the caller may not perform the operation."""

    kind = "authorization"


class StorageError(FamilyBankError):
    """Raised when the database fails after all retries were used."""

    kind = "storage"
    retryable = True


class StaleWriteError(Exception):
    """Internal signal that a compare-and-set lost a race; the unit of work is retried."""


__all__ = [
    "FamilyBankError",
    "ValidationError",
    "ConflictError",
    "InsufficientFundsError",
    "NotFoundError",
    "AuthorizationError",
    "StorageError",
    "StaleWriteError",
]
