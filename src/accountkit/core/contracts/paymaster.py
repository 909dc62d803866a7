"""
Verifying paymaster: gas sponsorship approved off-band by a verifier key.

A verifier signs a binding hash over the operation's unsigned core, the
chain id, this paymaster's address and a validity window. The paymaster
re-derives that hash and only sponsors operations whose signature recovers to
its verifier, whose cost fits under the ceiling and whose window is open.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, List, Optional, Tuple

from eth_abi import encode as abi_encode

from ..aa_exceptions import (
    InsufficientDepositError,
    NotAuthorizedError,
    SignatureRecoveryError,
    ValidationError,
)
from ..config import PAYMASTER_DATA_OFFSET
from ..crypto_utils import is_zero_address, keccak256, normalize_address, to_eth_signed_message_hash
from .events import SPONSORSHIP_GRANTED, ContractEvent
from .signers import DEFAULT_SIGNATURE_SCHEME, SignatureScheme
from .user_operation import SponsorshipData, UserOperation, parse_paymaster_and_data

if TYPE_CHECKING:
    from .entry_point import EntryPoint

logger = logging.getLogger(__name__)

DEFAULT_COST_CEILING = 10**17  # 0.1 ETH

_HASH_TYPES = [
    "address",  # sender
    "uint256",  # nonce
    "bytes32",  # keccak(init_code)
    "bytes32",  # keccak(call_data)
    "bytes32",  # account_gas_limits
    "uint256",  # pre_verification_gas
    "bytes32",  # gas_fees
    "uint256",  # chain id
    "address",  # paymaster
    "uint48",  # valid_until
    "uint48",  # valid_after
]


class SponsorshipValidation(Enum):
    APPROVED = "approved"
    INACTIVE = "inactive"
    COST_EXCEEDS_CEILING = "cost_exceeds_ceiling"
    INVALID_VERIFIER_SIGNATURE = "invalid_verifier_signature"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"


class PostOpMode(IntEnum):
    OP_SUCCEEDED = 0
    OP_REVERTED = 1
    POST_OP_REVERTED = 2


@dataclass(frozen=True)
class SponsorshipContext:
    """Opaque context handed from validation to settlement."""

    user_op_hash: bytes
    sender: str
    max_cost: int
    valid_until: int
    valid_after: int


def sponsorship_hash(
    user_op: UserOperation,
    chain_id: int,
    paymaster: str,
    valid_until: int,
    valid_after: int,
) -> bytes:
    """
    Binding hash a verifier signs for one operation.

    Covers every unsigned operation field except ``paymaster_and_data``,
    which carries the signature being produced.
    """
    return keccak256(
        abi_encode(
            _HASH_TYPES,
            [
                normalize_address(user_op.sender),
                user_op.nonce,
                keccak256(user_op.init_code),
                keccak256(user_op.call_data),
                user_op.account_gas_limits,
                user_op.pre_verification_gas,
                user_op.gas_fees,
                chain_id,
                normalize_address(paymaster),
                valid_until,
                valid_after,
            ],
        )
    )


class VerifyingPaymaster:
    """
    ERC-4337 verifying paymaster.

    The verifier is fixed at construction. The owner can change the cost
    ceiling, toggle sponsorship on and off and manage the paymaster's
    deposit and stake at its EntryPoint.
    """

    def __init__(
        self,
        verifier: str,
        owner: str,
        address: str,
        chain_id: int,
        cost_ceiling: int = DEFAULT_COST_CEILING,
        active: bool = True,
        data_offset: int = PAYMASTER_DATA_OFFSET,
        signature_scheme: SignatureScheme = DEFAULT_SIGNATURE_SCHEME,
        entry_point: Optional["EntryPoint"] = None,
    ) -> None:
        self._verifier = normalize_address(verifier)
        if is_zero_address(self._verifier):
            raise ValidationError("Verifier cannot be the zero address")
        self.owner = normalize_address(owner)
        self.address = normalize_address(address)
        self.chain_id = chain_id
        if cost_ceiling < 0:
            raise ValidationError("Cost ceiling cannot be negative")
        self.cost_ceiling = cost_ceiling
        self.active = active
        self.data_offset = data_offset
        self.signature_scheme = signature_scheme
        self.entry_point = entry_point

        # Statistics
        self.total_sponsored = 0
        self.gas_sponsored = 0
        self.events: List[ContractEvent] = []
        self._lock = threading.RLock()

    @property
    def verifier(self) -> str:
        return self._verifier

    # ==================== IPaymaster Interface ====================

    def parse_paymaster_and_data(self, paymaster_and_data: bytes) -> SponsorshipData:
        return parse_paymaster_and_data(paymaster_and_data, self.data_offset)

    def get_hash(self, user_op: UserOperation, valid_until: int, valid_after: int) -> bytes:
        return sponsorship_hash(user_op, self.chain_id, self.address, valid_until, valid_after)

    def validate_paymaster_user_op(
        self,
        user_op: UserOperation,
        user_op_hash: bytes,
        max_cost: int,
        now: Optional[int] = None,
    ) -> Tuple[Optional[SponsorshipContext], SponsorshipValidation]:
        """
        Validate a sponsorship and agree to pay.

        Args:
            user_op: The UserOperation
            user_op_hash: Hash of the operation, carried into the context
            max_cost: Maximum gas cost the paymaster may be charged
            now: Current time in seconds; defaults to the wall clock

        Returns:
            (context, outcome); context is None unless the outcome is APPROVED

        Raises:
            MalformedSponsorshipDataError: If paymaster_and_data cannot be decoded
        """
        with self._lock:
            active, ceiling = self.active, self.cost_ceiling

        if not active:
            return self._reject(user_op, SponsorshipValidation.INACTIVE)
        if max_cost > ceiling:
            return self._reject(
                user_op, SponsorshipValidation.COST_EXCEEDS_CEILING, max_cost=max_cost, ceiling=ceiling
            )

        data = self.parse_paymaster_and_data(user_op.paymaster_and_data)
        binding = to_eth_signed_message_hash(self.get_hash(user_op, data.valid_until, data.valid_after))
        try:
            signer = self.signature_scheme.recover(binding, data.signature)
        except SignatureRecoveryError:
            signer = None
        if signer != self._verifier:
            return self._reject(user_op, SponsorshipValidation.INVALID_VERIFIER_SIGNATURE)

        now = int(time.time()) if now is None else now
        if now < data.valid_after:
            return self._reject(
                user_op, SponsorshipValidation.NOT_YET_VALID, now=now, valid_after=data.valid_after
            )
        # valid_until == 0 means no expiry
        if data.valid_until and now > data.valid_until:
            return self._reject(
                user_op, SponsorshipValidation.EXPIRED, now=now, valid_until=data.valid_until
            )

        context = SponsorshipContext(
            user_op_hash=user_op_hash,
            sender=normalize_address(user_op.sender),
            max_cost=max_cost,
            valid_until=data.valid_until,
            valid_after=data.valid_after,
        )

        logger.debug(
            "Paymaster validating",
            extra={
                "event": "paymaster.validate",
                "sender": user_op.sender[:10],
                "max_cost": max_cost,
            },
        )
        return context, SponsorshipValidation.APPROVED

    def post_op(self, mode: PostOpMode, context: SponsorshipContext, actual_gas_cost: int) -> None:
        """
        Called after UserOp execution.

        Records the actual cost for monitoring. Cost enforcement already
        happened during validation.

        Args:
            mode: Execution mode
            context: Context from validation
            actual_gas_cost: Actual cost charged to this paymaster
        """
        with self._lock:
            self.total_sponsored += 1
            self.gas_sponsored += actual_gas_cost
            self.events.append(
                ContractEvent(
                    event_type=SPONSORSHIP_GRANTED,
                    address=self.address,
                    data={
                        "account": context.sender,
                        "actual_cost": actual_gas_cost,
                        "user_op_hash": "0x" + context.user_op_hash.hex(),
                    },
                )
            )

        logger.info(
            "Paymaster post-op",
            extra={
                "event": "paymaster.post_op",
                "mode": int(mode),
                "sender": context.sender[:10],
                "gas_cost": actual_gas_cost,
            },
        )

    # ==================== Management ====================

    def set_cost_ceiling(self, caller: str, cost_ceiling: int) -> bool:
        self._require_owner(caller)
        if cost_ceiling < 0:
            raise ValidationError("Cost ceiling cannot be negative")
        with self._lock:
            self.cost_ceiling = cost_ceiling
        logger.info(
            "Paymaster cost ceiling updated",
            extra={"event": "paymaster.ceiling_updated", "ceiling": cost_ceiling},
        )
        return True

    def set_active(self, caller: str, active: bool) -> bool:
        self._require_owner(caller)
        with self._lock:
            self.active = active
        logger.info(
            "Paymaster sponsorship toggled",
            extra={"event": "paymaster.toggled", "active": active},
        )
        return True

    def toggle_active(self, caller: str) -> bool:
        """Flip the active flag; returns the new state."""
        with self._lock:
            self.set_active(caller, not self.active)
            return self.active

    def deposit(self, amount: int) -> bool:
        """Add to this paymaster's deposit at the EntryPoint (anyone may fund)."""
        return self._require_entry_point().deposit_to(self.address, amount)

    def withdraw_to(self, caller: str, to: str, amount: int) -> bool:
        self._require_owner(caller)
        return self._require_entry_point().withdraw_to(self.address, to, amount)

    def get_deposit(self) -> int:
        return self._require_entry_point().balance_of(self.address)

    def add_stake(self, caller: str, amount: int, unstake_delay_sec: int) -> bool:
        self._require_owner(caller)
        return self._require_entry_point().add_stake(self.address, amount, unstake_delay_sec)

    def unlock_stake(self, caller: str, now: Optional[int] = None) -> bool:
        self._require_owner(caller)
        return self._require_entry_point().unlock_stake(self.address, now=now)

    def withdraw_stake(self, caller: str, to: str, now: Optional[int] = None) -> int:
        self._require_owner(caller)
        return self._require_entry_point().withdraw_stake(self.address, to, now=now)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "active": self.active,
                "cost_ceiling": self.cost_ceiling,
                "total_sponsored": self.total_sponsored,
                "gas_sponsored": self.gas_sponsored,
            }

    # ==================== Internal ====================

    def _reject(
        self,
        user_op: UserOperation,
        outcome: SponsorshipValidation,
        **details: int,
    ) -> Tuple[None, SponsorshipValidation]:
        logger.warning(
            "Sponsorship rejected",
            extra={
                "event": "paymaster.validation_failed",
                "sender": user_op.sender[:10],
                "reason": outcome.value,
                **details,
            },
        )
        return None, outcome

    def _require_owner(self, caller: str) -> None:
        try:
            normalized = normalize_address(caller)
        except ValueError:
            raise NotAuthorizedError("Caller is not owner") from None
        if normalized != self.owner:
            raise NotAuthorizedError("Caller is not owner", details={"caller": normalized})

    def _require_entry_point(self) -> "EntryPoint":
        if self.entry_point is None:
            raise InsufficientDepositError("Paymaster is not attached to an entry point")
        return self.entry_point
