"""
Reference ERC-4337 EntryPoint (the Executor).

Re-runs account and paymaster validation for every operation before any side
effect, then commits the replay identifier and prefund in one step, executes
the call data and settles gas against deposits held in escrow.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from ..aa_exceptions import (
    AccountAbstractionError,
    InsufficientDepositError,
    UserOperationValidationError,
    ValidationError,
)
from ..config import CHAIN_ID, ENTRY_POINT_ADDRESS, PAYMASTER_DATA_OFFSET
from ..crypto_utils import normalize_address
from .account_factory import AccountFactory
from .events import USER_OPERATION_EVENT, ContractEvent
from .paymaster import PostOpMode, SponsorshipContext, SponsorshipValidation, VerifyingPaymaster
from .replay_protection import pack_nonce
from .smart_account import SmartAccount, ValidationOutcome
from .user_operation import UserOperation, validate_user_operation_basic

logger = logging.getLogger(__name__)


@dataclass
class DepositInfo:
    deposit: int = 0
    staked: bool = False
    stake: int = 0
    unstake_delay_sec: int = 0
    withdraw_time: int = 0


@dataclass
class ValidationResult:
    """Outcome of the validation stage for one operation."""

    valid: bool
    reason: str = ""
    account_outcome: Optional[ValidationOutcome] = None
    paymaster_outcome: Optional[SponsorshipValidation] = None
    signer: Optional[str] = None
    prefund: int = 0
    missing_account_funds: int = 0
    valid_after: int = 0
    valid_until: int = 0

    @property
    def sig_failed(self) -> bool:
        return self.account_outcome in (
            ValidationOutcome.SIGNATURE_MALFORMED,
            ValidationOutcome.SIGNATURE_INVALID,
            ValidationOutcome.UNKNOWN_SIGNER,
        )


@dataclass
class ExecutionResult:
    user_op_hash: bytes
    success: bool
    actual_gas_used: int = 0
    actual_gas_cost: int = 0
    # Rejected at validation: nothing was committed, not even the nonce.
    # user_op_hash is empty when the operation was too malformed to hash.
    rejected: bool = False
    reason: str = ""
    return_data: List[bytes] = field(default_factory=list)


@dataclass
class _PreparedOp:
    account: SmartAccount
    factory: Optional[AccountFactory]
    paymaster: Optional[VerifyingPaymaster]
    context: Optional[SponsorshipContext]
    validation: ValidationResult


@dataclass
class EntryPoint:
    """
    ERC-4337 EntryPoint contract.

    The singleton contract that:
    - Receives UserOperations from bundlers
    - Validates signatures and sponsorships
    - Executes operations
    - Manages account/paymaster deposits and stakes
    """

    address: str = ENTRY_POINT_ADDRESS
    chain_id: int = CHAIN_ID
    paymaster_data_offset: int = PAYMASTER_DATA_OFFSET

    # Escrow (for gas prepayment and anti-spam stake)
    deposits: Dict[str, DepositInfo] = field(default_factory=dict)

    # Registry of known accounts/paymasters/factories
    accounts: Dict[str, SmartAccount] = field(default_factory=dict)
    paymasters: Dict[str, VerifyingPaymaster] = field(default_factory=dict)
    factories: Dict[str, AccountFactory] = field(default_factory=dict)

    # Statistics
    total_ops_processed: int = 0
    total_ops_rejected: int = 0
    total_ops_failed: int = 0
    total_gas_used: int = 0
    events: List[ContractEvent] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self.address = normalize_address(self.address)
        self._lock = threading.RLock()
        self._sender_locks: Dict[str, threading.Lock] = {}

    # ==================== Main Entry Point ====================

    def get_user_op_hash(self, op: UserOperation) -> bytes:
        return op.hash(self.address, self.chain_id)

    def handle_ops(
        self,
        ops: List[UserOperation],
        beneficiary: str,
        now: Optional[int] = None,
    ) -> List[ExecutionResult]:
        """
        Handle a batch of UserOperations.

        Called by bundlers. Each UserOp is:
        1. Validated (account, then paymaster) with no side effects
        2. Committed (nonce consumed, prefund reserved)
        3. Executed
        4. Settled (gas charged, beneficiary paid, paymaster post-op)

        Args:
            ops: List of UserOperations
            beneficiary: Address to receive gas payment
            now: Current time in seconds for sponsorship windows

        Returns:
            List of execution results, one per operation
        """
        beneficiary = normalize_address(beneficiary)
        results = []
        for op in ops:
            with self._sender_lock(op.sender):
                results.append(self._handle_single_op(op, beneficiary, now))

        with self._lock:
            self.total_ops_processed += len(ops)
        return results

    def simulate_validation(self, op: UserOperation, now: Optional[int] = None) -> ValidationResult:
        """Run the full validation stage without deploying, consuming or charging."""
        with self._sender_lock(op.sender):
            invalid = self._check_structure(op)
            if invalid is not None:
                return invalid
            _, result = self._prepare(op, self.get_user_op_hash(op), now)
        return result

    def _handle_single_op(
        self,
        op: UserOperation,
        beneficiary: str,
        now: Optional[int],
    ) -> ExecutionResult:
        # A malformed operation has no well-defined hash
        invalid = self._check_structure(op)
        if invalid is not None:
            return self._rejected(op, b"", invalid.reason)
        op_hash = self.get_user_op_hash(op)

        # 1. Validate
        prepared, rejection = self._prepare(op, op_hash, now)
        if prepared is None:
            return self._rejected(op, op_hash, rejection.reason)

        # 2. Deploy (if needed) and commit
        max_cost = prepared.validation.prefund
        missing = prepared.validation.missing_account_funds
        sender = prepared.account.address
        payer = prepared.paymaster.address if prepared.paymaster else sender
        with self._lock:
            available = self.balance_of(payer) + (missing if payer == sender else 0)
            if available < max_cost:
                return self._rejected(op, op_hash, "AA21 prefund not covered by deposit")

            account = prepared.account
            if prepared.factory is not None:
                account = prepared.factory.deploy_from_call_data(op.init_code[20:])
                self.register_account(account)

            commit = account.commit_user_op(op.nonce, missing)
            if not commit.valid:
                return self._rejected(op, op_hash, commit.outcome.value)
            self._info(sender).deposit += missing
            self._info(payer).deposit -= max_cost

        # 3. Execute
        success = True
        reason = ""
        return_data: List[bytes] = []
        try:
            return_data = account.dispatch(self.address, op.call_data)
        except AccountAbstractionError as e:
            success = False
            reason = e.message
            logger.warning(
                "UserOp execution failed",
                extra={
                    "event": "entrypoint.execution_failed",
                    "sender": op.sender[:10],
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

        # 4. Settle
        gas_used = min(
            op.max_gas(self.paymaster_data_offset),
            op.pre_verification_gas + op.verification_gas_limit + op.call_gas_limit // 2,
        )
        actual_cost = min(max_cost, gas_used * op.max_fee_per_gas)
        with self._lock:
            self._info(payer).deposit += max_cost - actual_cost
            self._info(beneficiary).deposit += actual_cost
            self.total_gas_used += gas_used
            if not success:
                self.total_ops_failed += 1

        if prepared.paymaster is not None and prepared.context is not None:
            prepared.paymaster.post_op(
                PostOpMode.OP_SUCCEEDED if success else PostOpMode.OP_REVERTED,
                prepared.context,
                actual_cost,
            )

        self.events.append(
            ContractEvent(
                event_type=USER_OPERATION_EVENT,
                address=self.address,
                data={
                    "user_op_hash": "0x" + op_hash.hex(),
                    "sender": account.address,
                    "paymaster": prepared.paymaster.address if prepared.paymaster else None,
                    "nonce": op.nonce,
                    "success": success,
                    "actual_gas_cost": actual_cost,
                    "actual_gas_used": gas_used,
                },
            )
        )
        logger.info(
            "UserOp processed",
            extra={
                "event": "entrypoint.op_processed",
                "sender": op.sender[:10],
                "success": success,
                "gas_used": gas_used,
            },
        )
        return ExecutionResult(
            user_op_hash=op_hash,
            success=success,
            actual_gas_used=gas_used,
            actual_gas_cost=actual_cost,
            reason=reason,
            return_data=return_data,
        )

    # ==================== Validation ====================

    def _prepare(
        self,
        op: UserOperation,
        op_hash: bytes,
        now: Optional[int],
    ) -> Tuple[Optional[_PreparedOp], ValidationResult]:
        """
        Validation stage for a structurally valid operation.

        Returns (prepared, result); prepared is None on rejection.
        """
        sender = normalize_address(op.sender)

        # Resolve the account, counterfactually if it carries init code
        factory = None
        if op.init_code:
            if sender in self.accounts:
                return None, self._invalid(op, "AA10 sender already constructed")
            factory = self.factories.get(normalize_address("0x" + op.init_code[:20].hex()))
            if factory is None:
                return None, self._invalid(op, "AA13 factory not registered")
            try:
                account = factory.preview_from_call_data(op.init_code[20:])
            except ValidationError as e:
                return None, self._invalid(op, f"AA13 initCode failed: {e.message}")
            if account.address != sender:
                return None, self._invalid(op, "AA14 initCode must return sender")
        else:
            account = self.accounts.get(sender)
            if account is None:
                return None, self._invalid(op, "AA20 account not deployed")

        max_cost = op.max_cost(self.paymaster_data_offset)
        paymaster = None
        if op.paymaster_and_data:
            paymaster = self.paymasters.get(op.paymaster)
            if paymaster is None:
                return None, self._invalid(op, "AA30 paymaster not registered")
            missing = 0
        else:
            missing = max(0, max_cost - self.balance_of(sender))

        # Account validation without committing anything
        account_result = account.validate_user_op(op, op_hash, missing, consume=False)
        if not account_result.valid:
            return None, self._invalid(
                op, f"AA24 {account_result.outcome.value}", account_outcome=account_result.outcome
            )

        context = None
        valid_after = valid_until = 0
        if paymaster is not None:
            if self.balance_of(paymaster.address) < max_cost:
                return None, self._invalid(op, "AA31 paymaster deposit too low")
            try:
                context, outcome = paymaster.validate_paymaster_user_op(op, op_hash, max_cost, now=now)
            except ValidationError as e:
                return None, self._invalid(op, f"AA33 {e.message}")
            if outcome is not SponsorshipValidation.APPROVED:
                return None, self._invalid(op, f"AA34 {outcome.value}", paymaster_outcome=outcome)
            valid_after, valid_until = context.valid_after, context.valid_until

        result = ValidationResult(
            valid=True,
            account_outcome=account_result.outcome,
            paymaster_outcome=SponsorshipValidation.APPROVED if paymaster else None,
            signer=account_result.signer,
            prefund=max_cost,
            missing_account_funds=missing,
            valid_after=valid_after,
            valid_until=valid_until,
        )
        return _PreparedOp(account, factory, paymaster, context, result), result

    def _check_structure(self, op: UserOperation) -> Optional[ValidationResult]:
        try:
            validate_user_operation_basic(op)
        except UserOperationValidationError as e:
            return self._invalid(op, e.message)
        return None

    def _invalid(self, op: UserOperation, reason: str, **outcomes: object) -> ValidationResult:
        logger.warning(
            "UserOp validation failed",
            extra={
                "event": "entrypoint.validation_failed",
                "sender": op.sender[:10],
                "nonce": op.nonce,
                "reason": reason,
            },
        )
        return ValidationResult(valid=False, reason=reason, **outcomes)

    def _rejected(self, op: UserOperation, op_hash: bytes, reason: str) -> ExecutionResult:
        with self._lock:
            self.total_ops_rejected += 1
        return ExecutionResult(user_op_hash=op_hash, success=False, rejected=True, reason=reason)

    # ==================== Deposit Management ====================

    def deposit_to(self, account: str, amount: int) -> bool:
        """Deposit funds for an account."""
        if amount < 0:
            raise ValidationError("Deposit amount cannot be negative")
        with self._lock:
            self._info(account).deposit += amount
        return True

    def withdraw_to(self, caller: str, withdraw_address: str, amount: int) -> bool:
        """Withdraw from the caller's deposit."""
        normalize_address(withdraw_address)
        with self._lock:
            info = self._info(caller)
            if amount < 0 or amount > info.deposit:
                raise InsufficientDepositError("Insufficient deposit")
            info.deposit -= amount
        logger.info(
            "Deposit withdrawn",
            extra={"event": "entrypoint.withdraw", "account": caller[:10], "amount": amount},
        )
        return True

    def balance_of(self, account: str) -> int:
        """Get account deposit balance."""
        with self._lock:
            info = self.deposits.get(normalize_address(account))
            return info.deposit if info else 0

    def get_deposit_info(self, account: str) -> DepositInfo:
        with self._lock:
            return replace(self.deposits.get(normalize_address(account)) or DepositInfo())

    def add_stake(self, caller: str, amount: int, unstake_delay_sec: int) -> bool:
        with self._lock:
            info = self._info(caller)
            if unstake_delay_sec <= 0:
                raise ValidationError("must specify unstake delay")
            if unstake_delay_sec < info.unstake_delay_sec:
                raise ValidationError("cannot decrease unstake time")
            if amount < 0 or info.stake + amount == 0:
                raise ValidationError("no stake specified")
            info.stake += amount
            info.unstake_delay_sec = unstake_delay_sec
            info.staked = True
            info.withdraw_time = 0
        logger.info(
            "Stake added",
            extra={"event": "entrypoint.stake_added", "account": caller[:10], "amount": amount},
        )
        return True

    def unlock_stake(self, caller: str, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        with self._lock:
            info = self._info(caller)
            if not info.staked:
                raise ValidationError("not staked")
            info.withdraw_time = now + info.unstake_delay_sec
            info.staked = False
        return True

    def withdraw_stake(self, caller: str, withdraw_address: str, now: Optional[int] = None) -> int:
        normalize_address(withdraw_address)
        now = int(time.time()) if now is None else now
        with self._lock:
            info = self._info(caller)
            if info.stake == 0:
                raise InsufficientDepositError("No stake to withdraw")
            if info.withdraw_time == 0:
                raise ValidationError("must call unlockStake() first")
            if now < info.withdraw_time:
                raise ValidationError("Stake withdrawal is not due")
            amount = info.stake
            info.stake = 0
            info.unstake_delay_sec = 0
            info.withdraw_time = 0
        return amount

    def get_nonce(self, sender: str, key: int = 0) -> int:
        """
        Get nonce for account.

        Supports 2D nonces (key, sequence) for parallel execution.
        """
        account = self.accounts.get(normalize_address(sender))
        if account:
            return account.get_nonce(key)
        return pack_nonce(key, 0)

    # ==================== Registration ====================

    def register_account(self, account: SmartAccount) -> None:
        """Register a smart account."""
        with self._lock:
            self.accounts[account.address] = account
        account.entry_point = self.address

    def register_paymaster(self, paymaster: VerifyingPaymaster) -> None:
        """Register a paymaster."""
        if paymaster.chain_id != self.chain_id:
            raise ValidationError(
                f"Paymaster chain id {paymaster.chain_id} does not match {self.chain_id}"
            )
        with self._lock:
            self.paymasters[paymaster.address] = paymaster
        paymaster.entry_point = self

    def register_factory(self, factory: AccountFactory) -> None:
        """Register a factory; accounts it deploys are registered automatically."""
        with self._lock:
            self.factories[factory.address] = factory
        factory.entry_point = self.address
        factory.on_deploy = self.register_account

    # ==================== Stats ====================

    def get_stats(self) -> Dict:
        """Get EntryPoint statistics."""
        with self._lock:
            return {
                "total_ops_processed": self.total_ops_processed,
                "total_ops_rejected": self.total_ops_rejected,
                "total_ops_failed": self.total_ops_failed,
                "total_gas_used": self.total_gas_used,
                "accounts_registered": len(self.accounts),
                "paymasters_registered": len(self.paymasters),
                "factories_registered": len(self.factories),
            }

    # ==================== Internal ====================

    def _info(self, account: str) -> DepositInfo:
        return self.deposits.setdefault(normalize_address(account), DepositInfo())

    def _sender_lock(self, sender: str) -> threading.Lock:
        with self._lock:
            return self._sender_locks.setdefault(sender.lower(), threading.Lock())
