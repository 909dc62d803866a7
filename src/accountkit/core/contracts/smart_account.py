"""
Smart account: owner set + replay protection + signature validation.

Authorization of one operation walks a fixed state machine:

    Received -> SignatureChecked -> ReplayChecked -> Authorized | Rejected

Expected failures (bad signature, unknown signer, used nonce) come back as
``AccountValidation`` values, never as exceptions, so an Executor can reject
an operation before committing anything. The replay identifier is consumed
if and only if the signature was valid and the whole pass succeeded.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from ..aa_exceptions import (
    ExecutionFailedError,
    InsufficientDepositError,
    InvalidTargetError,
    NotAuthorizedError,
    SignatureRecoveryError,
    ValidationError,
)
from ..crypto_utils import (
    COMPACT_SIGNATURE_LENGTH,
    SIGNATURE_LENGTH,
    is_zero_address,
    normalize_address,
    to_eth_signed_message_hash,
)
from .address_derivation import function_selector
from .events import OWNER_ADDED, OWNER_REMOVED, ContractEvent
from .owner_registry import OwnerRegistry
from .replay_protection import ReplayState
from .signers import DEFAULT_SIGNATURE_SCHEME, SignatureScheme
from .user_operation import UserOperation

logger = logging.getLogger(__name__)

# ERC-1271
ERC1271_MAGIC_VALUE = bytes.fromhex("1626ba7e")
ERC1271_INVALID_VALUE = bytes.fromhex("ffffffff")

EXECUTE_SIGNATURE = "execute(address,uint256,bytes)"
EXECUTE_BATCH_SIGNATURE = "executeBatch(address[],uint256[],bytes[])"
EXECUTE_SELECTOR = function_selector(EXECUTE_SIGNATURE)
EXECUTE_BATCH_SELECTOR = function_selector(EXECUTE_BATCH_SIGNATURE)

# (from, to, value, data) -> return data; raising means the call reverted
CallHandler = Callable[[str, str, int, bytes], bytes]


def default_call_handler(sender: str, dest: str, value: int, data: bytes) -> bytes:
    return b""


class ValidationOutcome(Enum):
    """Signaled (non-fatal) results of account validation."""

    OK = "ok"
    SIGNATURE_MALFORMED = "signature_malformed"
    SIGNATURE_INVALID = "signature_invalid"
    UNKNOWN_SIGNER = "unknown_signer"
    NONCE_ALREADY_USED = "nonce_already_used"
    INSUFFICIENT_PREFUND = "insufficient_prefund"


@dataclass(frozen=True)
class AccountValidation:
    outcome: ValidationOutcome
    signer: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.outcome is ValidationOutcome.OK


@dataclass
class SmartAccount:
    """
    Multi-owner smart account.

    Any single owner may authorize an operation. Signatures are recoverable
    ECDSA over the EIP-191 wrapped user operation hash unless another
    ``SignatureScheme`` is injected.
    """

    address: str
    entry_point: str = ""
    balance: int = 0
    signature_scheme: SignatureScheme = field(default=DEFAULT_SIGNATURE_SCHEME, repr=False)
    call_handler: CallHandler = field(default=default_call_handler, repr=False)
    events: List[ContractEvent] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self.address = normalize_address(self.address)
        if self.entry_point:
            self.entry_point = normalize_address(self.entry_point)
        self.owner_registry = OwnerRegistry(self.address)
        self.replay_state = ReplayState(self.address)
        self._lock = threading.RLock()

    # ==================== Owners ====================

    def initialize(self, owners: Iterable[str]) -> None:
        self.owner_registry.initialize(owners)

    @property
    def owners(self) -> frozenset:
        return self.owner_registry.list_owners()

    def is_owner(self, identity: str) -> bool:
        return self.owner_registry.is_owner(identity)

    def add_owner(self, caller: str, new_owner: str) -> bool:
        added = self.owner_registry.add_owner(caller, new_owner)
        self._emit(OWNER_ADDED, owner=added)
        return True

    def remove_owner(self, caller: str, owner: str) -> bool:
        removed = self.owner_registry.remove_owner(caller, owner)
        self._emit(OWNER_REMOVED, owner=removed)
        return True

    # ==================== Validation ====================

    def validate_signature(self, user_op_hash: bytes, signature: bytes) -> AccountValidation:
        """
        Check that an owner signed ``user_op_hash``.

        Side-effect free and idempotent: the same input always yields the
        same verdict.
        """
        if len(user_op_hash) != 32:
            logger.warning(
                "Signature validation failed: malformed hash",
                extra={
                    "event": "account.signature_validation_failed",
                    "account": self.address[:10],
                    "reason": "malformed_hash",
                    "length": len(user_op_hash),
                },
            )
            return AccountValidation(ValidationOutcome.SIGNATURE_MALFORMED)

        if len(signature) not in (SIGNATURE_LENGTH, COMPACT_SIGNATURE_LENGTH):
            logger.warning(
                "Signature validation failed: malformed signature",
                extra={
                    "event": "account.signature_validation_failed",
                    "account": self.address[:10],
                    "reason": "malformed_signature",
                    "length": len(signature),
                },
            )
            return AccountValidation(ValidationOutcome.SIGNATURE_MALFORMED)

        try:
            signer = self.signature_scheme.recover(to_eth_signed_message_hash(user_op_hash), signature)
        except SignatureRecoveryError as e:
            logger.warning(
                "Signature validation failed: recovery error",
                extra={
                    "event": "account.signature_validation_failed",
                    "account": self.address[:10],
                    "reason": "recovery_failed",
                    "error": str(e),
                },
            )
            return AccountValidation(ValidationOutcome.SIGNATURE_INVALID)

        if not self.owner_registry.is_owner(signer):
            logger.warning(
                "Signature validation failed: signer is not an owner",
                extra={
                    "event": "account.signature_validation_failed",
                    "account": self.address[:10],
                    "reason": "unknown_signer",
                    "signer": signer[:10],
                },
            )
            return AccountValidation(ValidationOutcome.UNKNOWN_SIGNER, signer=signer)

        logger.debug(
            "Signature validation succeeded",
            extra={
                "event": "account.signature_validation_success",
                "account": self.address[:10],
                "signer": signer[:10],
            },
        )
        return AccountValidation(ValidationOutcome.OK, signer=signer)

    def check_and_consume_replay(self, nonce: int) -> AccountValidation:
        if self.replay_state.check_and_consume(nonce):
            return AccountValidation(ValidationOutcome.OK)
        logger.warning(
            "Replay rejected: nonce already used",
            extra={"event": "account.replay_rejected", "account": self.address[:10], "nonce": nonce},
        )
        return AccountValidation(ValidationOutcome.NONCE_ALREADY_USED)

    def validate_user_op(
        self,
        user_op: UserOperation,
        user_op_hash: bytes,
        missing_account_funds: int = 0,
        *,
        consume: bool = True,
    ) -> AccountValidation:
        """
        Combined authorization entry point used by the Executor.

        Args:
            user_op: The operation being authorized
            user_op_hash: Hash of the operation as computed by the EntryPoint
            missing_account_funds: Prefund the account must pay
            consume: Commit nonce consumption and prefund now. An Executor that
                still has to consult a paymaster passes False and calls
                ``commit_user_op`` once every check has passed.

        Returns:
            AccountValidation describing the verdict
        """
        with self._lock:
            # A consumed identifier can never succeed, whatever the signature says
            if self.replay_state.is_consumed(user_op.nonce):
                return AccountValidation(ValidationOutcome.NONCE_ALREADY_USED)

            result = self.validate_signature(user_op_hash, user_op.signature)
            if not result.valid:
                return result

            if missing_account_funds > self.balance:
                logger.warning(
                    "Validation failed: account cannot pay prefund",
                    extra={
                        "event": "account.prefund_failed",
                        "account": self.address[:10],
                        "missing": missing_account_funds,
                        "balance": self.balance,
                    },
                )
                return AccountValidation(ValidationOutcome.INSUFFICIENT_PREFUND, signer=result.signer)

            if not consume:
                return result

            commit = self.commit_user_op(user_op.nonce, missing_account_funds)
            if not commit.valid:
                return commit
            return result

    def commit_user_op(self, nonce: int, missing_account_funds: int = 0) -> AccountValidation:
        """Atomically consume ``nonce`` and pay the prefund; nothing changes on failure."""
        with self._lock:
            if missing_account_funds > self.balance:
                return AccountValidation(ValidationOutcome.INSUFFICIENT_PREFUND)
            result = self.check_and_consume_replay(nonce)
            if not result.valid:
                return result
            self.balance -= missing_account_funds
            return result

    def is_valid_signature(self, hash_: bytes, signature: bytes) -> bytes:
        """
        ERC-1271 entry point: lets this account act as a signer elsewhere.

        Uses the same owner recovery as operation validation, over the raw
        hash, and never touches replay state.
        """
        try:
            signer = self.signature_scheme.recover(hash_, signature)
        except SignatureRecoveryError:
            return ERC1271_INVALID_VALUE
        return ERC1271_MAGIC_VALUE if self.owner_registry.is_owner(signer) else ERC1271_INVALID_VALUE

    def get_nonce(self, key: int = 0) -> int:
        return self.replay_state.next_nonce(key)

    # ==================== Execution ====================

    def execute(self, caller: str, dest: str, value: int, data: bytes) -> bytes:
        """
        Execute a call from this account.

        Can only be called by the EntryPoint or a current owner.

        Raises:
            NotAuthorizedError: Caller is neither EntryPoint nor owner
            InvalidTargetError: Target is the null address
            ExecutionFailedError: The downstream call failed (balance restored)
        """
        self._require_entry_point_or_owner(caller)
        with self._lock:
            snapshot = self.balance
            try:
                return self._call(dest, value, data)
            except ExecutionFailedError:
                self.balance = snapshot
                raise

    def execute_batch(
        self,
        caller: str,
        dests: Sequence[str],
        values: Sequence[int],
        datas: Sequence[bytes],
    ) -> List[bytes]:
        """Execute several calls; if any fails none of them take effect."""
        self._require_entry_point_or_owner(caller)
        if len(dests) != len(values) or len(dests) != len(datas):
            raise ExecutionFailedError("Batch arrays length mismatch")

        with self._lock:
            snapshot = self.balance
            results = []
            for index, (dest, value, data) in enumerate(zip(dests, values, datas)):
                try:
                    results.append(self._call(dest, value, data))
                except ExecutionFailedError as e:
                    self.balance = snapshot
                    raise ExecutionFailedError(
                        f"Batch call {index} failed: {e.message}", index=index
                    ) from e
                except InvalidTargetError:
                    self.balance = snapshot
                    raise
            return results

    def dispatch(self, caller: str, call_data: bytes) -> List[bytes]:
        """Decode ABI ``execute`` / ``executeBatch`` call data and run it."""
        if not call_data:
            return []
        selector, payload = call_data[:4], call_data[4:]
        try:
            if selector == EXECUTE_SELECTOR:
                dest, value, data = abi_decode(["address", "uint256", "bytes"], payload)
                return [self.execute(caller, dest, value, data)]
            if selector == EXECUTE_BATCH_SELECTOR:
                dests, values, datas = abi_decode(["address[]", "uint256[]", "bytes[]"], payload)
                return self.execute_batch(caller, list(dests), list(values), list(datas))
        except DecodingError as e:
            raise ExecutionFailedError(f"Malformed call data: {e}") from e
        raise ExecutionFailedError(f"Unknown call selector 0x{selector.hex()}")

    def _call(self, dest: str, value: int, data: bytes) -> bytes:
        try:
            target = normalize_address(dest)
        except ValueError:
            raise InvalidTargetError(f"Invalid call target: {dest!r}") from None
        if is_zero_address(target):
            raise InvalidTargetError("Call target cannot be the zero address")
        if value < 0 or value > self.balance:
            raise ExecutionFailedError(
                f"Insufficient balance for call value ({value} > {self.balance})"
            )

        self.balance -= value
        try:
            result = self.call_handler(self.address, target, value, data)
        except Exception as e:
            logger.warning(
                "Account call reverted",
                extra={
                    "event": "account.call_failed",
                    "account": self.address[:10],
                    "dest": target[:10],
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise ExecutionFailedError(f"Call to {target} failed: {e}") from e

        logger.debug(
            "Account executing call",
            extra={
                "event": "account.execute",
                "account": self.address[:10],
                "dest": target[:10],
                "value": value,
            },
        )
        return result if result is not None else b""

    # ==================== Deposits ====================

    def add_deposit(self, amount: int) -> None:
        """Add to account balance."""
        if amount < 0:
            raise ValidationError("Deposit amount cannot be negative")
        with self._lock:
            self.balance += amount

    def withdraw_deposit(self, caller: str, to: str, amount: int) -> bool:
        """Withdraw from account balance (owner only)."""
        self.owner_registry._require_owner(caller)
        normalize_address(to)
        with self._lock:
            if amount < 0 or amount > self.balance:
                raise InsufficientDepositError("Insufficient balance")
            self.balance -= amount
        return True

    def get_deposit(self) -> int:
        return self.balance

    # ==================== Internal ====================

    def _require_entry_point_or_owner(self, caller: str) -> None:
        try:
            normalized = normalize_address(caller)
        except ValueError:
            raise NotAuthorizedError("Caller is not the entry point or an owner") from None
        if self.entry_point and normalized == self.entry_point:
            return
        if not self.owner_registry.is_owner(normalized):
            raise NotAuthorizedError(
                "Caller is not the entry point or an owner", details={"caller": normalized}
            )

    def _emit(self, event_type: str, **data: object) -> None:
        self.events.append(ContractEvent(event_type=event_type, address=self.address, data=dict(data)))
