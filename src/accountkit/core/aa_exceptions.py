"""
Account abstraction exception hierarchy.

Hard faults (structurally impossible input, unauthorized callers, broken
invariants) are raised as typed exceptions. Expected, recoverable validation
failures such as a wrong signer or an expired sponsorship are NOT raised; they
travel back to the Executor as outcome values so it can reject an operation
cheaply.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AccountAbstractionError(Exception):
    """Base exception for all account abstraction errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether resubmitting a corrected request can succeed
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable


# ==================== Validation Errors ====================


class ValidationError(AccountAbstractionError):
    """Raised when input is malformed and cannot be interpreted."""
    pass


class InvalidOwnerListError(ValidationError):
    """Raised when an owner list is empty, too long, has null or duplicate entries."""
    pass


class EmptyOwnerListError(InvalidOwnerListError):
    """Raised when an account is requested with no owners."""
    pass


class TooManyOwnersError(InvalidOwnerListError):
    """Raised when an owner set would exceed the maximum size."""
    pass


class DuplicateOwnerError(InvalidOwnerListError):
    """Raised when the same owner appears twice in an owner list."""
    pass


class InvalidOwnerError(ValidationError):
    """Raised when an owner identity is null, malformed or already present."""
    pass


class AlreadyInitializedError(ValidationError):
    """Raised when an owner registry is initialized twice."""
    pass


class MalformedSponsorshipDataError(ValidationError):
    """Raised when a paymaster-and-data blob cannot be decoded."""
    pass


class UserOperationValidationError(ValidationError):
    """Raised when a user operation fails basic structural checks."""
    pass


class SignatureRecoveryError(ValidationError):
    """Raised by a signature scheme when no signer can be recovered."""
    pass


# ==================== Authorization Errors ====================


class AuthorizationError(AccountAbstractionError):
    """Raised when a caller is not allowed to perform an action."""
    pass


class NotAuthorizedError(AuthorizationError):
    """Raised when the caller is not a current owner (or the EntryPoint)."""
    pass


class CannotRemoveSelfError(AuthorizationError):
    """Raised when an owner tries to remove itself."""
    pass


class UnknownOwnerError(AuthorizationError):
    """Raised when removing an identity that is not an owner."""
    pass


class LastOwnerError(AuthorizationError):
    """Raised when a removal would leave an account without owners."""
    pass


# ==================== Execution Errors ====================


class ExecutionError(AccountAbstractionError):
    """Raised when an authorized call cannot be carried out."""
    pass


class InvalidTargetError(ExecutionError):
    """Raised when a call targets the null address."""
    pass


class ExecutionFailedError(ExecutionError):
    """Raised when a downstream call fails; the whole call is rolled back."""

    def __init__(self, message: str, index: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.index = index


class InsufficientDepositError(ExecutionError):
    """Raised when a deposit or stake cannot cover a withdrawal or charge."""
    pass


# ==================== Sponsorship Service Errors ====================


class SponsorshipServiceError(AccountAbstractionError):
    """Base exception for the verifier-side signing service."""
    pass


class InvalidTimestampError(SponsorshipServiceError):
    """Raised when a sponsorship request would already be expired."""
    pass


class VerifierNotFoundError(SponsorshipServiceError):
    """Raised when a sponsorship request names an unknown verifier key."""
    pass
