"""
Account abstraction contracts.

This module provides:
- SmartAccount: multi-owner account with replay protection
- AccountFactory: deterministic account deployment
- VerifyingPaymaster: verifier-approved gas sponsorship
- EntryPoint: reference executor for UserOperations
"""

from .account_factory import AccountFactory
from .entry_point import DepositInfo, EntryPoint, ExecutionResult, ValidationResult
from .owner_registry import OwnerRegistry
from .paymaster import (
    PostOpMode,
    SponsorshipContext,
    SponsorshipValidation,
    VerifyingPaymaster,
)
from .replay_protection import ReplayState, pack_nonce
from .signers import EcdsaRecoveryScheme, SignatureScheme
from .smart_account import AccountValidation, SmartAccount, ValidationOutcome
from .user_operation import SponsorshipData, UserOperation

__all__ = [
    "AccountFactory",
    "AccountValidation",
    "DepositInfo",
    "EcdsaRecoveryScheme",
    "EntryPoint",
    "ExecutionResult",
    "OwnerRegistry",
    "PostOpMode",
    "ReplayState",
    "SignatureScheme",
    "SmartAccount",
    "SponsorshipContext",
    "SponsorshipData",
    "SponsorshipValidation",
    "UserOperation",
    "ValidationOutcome",
    "ValidationResult",
    "VerifyingPaymaster",
    "pack_nonce",
]
