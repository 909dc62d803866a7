"""
UserOperation wire layout (EntryPoint v0.7 packed form).

Field order is significant for hashing:

    sender, nonce, init_code, call_data,
    account_gas_limits (verification_gas_limit:16 || call_gas_limit:16),
    pre_verification_gas,
    gas_fees (max_priority_fee_per_gas:16 || max_fee_per_gas:16),
    paymaster_and_data, signature

The signature is never part of any hash it has to sign.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Tuple

from eth_abi import encode as abi_encode

from ..aa_exceptions import MalformedSponsorshipDataError, UserOperationValidationError
from ..config import PAYMASTER_ADDRESS_LENGTH, PAYMASTER_DATA_OFFSET_V07
from ..crypto_utils import (
    COMPACT_SIGNATURE_LENGTH,
    SIGNATURE_LENGTH,
    is_zero_address,
    keccak256,
    normalize_address,
)

MAX_UINT256 = 2**256 - 1
MAX_UINT128 = 2**128 - 1
MAX_UINT48 = 2**48 - 1
TIMESTAMP_LENGTH = 8
GAS_FIELD_LENGTH = 16

# Gas fee sanity bounds
MAX_FEE_PER_GAS = 1_000_000_000_000  # 1000 gwei
MAX_PRIORITY_FEE = 100_000_000_000  # 100 gwei
MIN_GAS_PRICE = 1_000_000_000  # 1 gwei

_PACKED_TYPES = ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"]


def pack_uint128_pair(high: int, low: int) -> bytes:
    if not (0 <= high <= MAX_UINT128 and 0 <= low <= MAX_UINT128):
        raise UserOperationValidationError("Packed gas fields must fit in 128 bits")
    return high.to_bytes(GAS_FIELD_LENGTH, "big") + low.to_bytes(GAS_FIELD_LENGTH, "big")


def unpack_uint128_pair(packed: bytes) -> Tuple[int, int]:
    if len(packed) != 2 * GAS_FIELD_LENGTH:
        raise UserOperationValidationError("Packed gas field must be 32 bytes")
    return int.from_bytes(packed[:16], "big"), int.from_bytes(packed[16:], "big")


@dataclass(frozen=True)
class UserOperation:
    """
    ERC-4337 UserOperation.

    Represents a user's intent to execute a call from a smart account.
    Instances are immutable; use ``with_signature`` / ``with_paymaster_and_data``
    to derive signed or sponsored copies.
    """

    sender: str  # Smart account address
    nonce: int  # Replay identifier (key << 64 | sequence)
    init_code: bytes = b""  # factory address || factory call data, empty if deployed
    call_data: bytes = b""
    call_gas_limit: int = 200_000
    verification_gas_limit: int = 100_000
    pre_verification_gas: int = 50_000
    max_priority_fee_per_gas: int = 1_000_000_000
    max_fee_per_gas: int = 1_000_000_000
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    @property
    def account_gas_limits(self) -> bytes:
        return pack_uint128_pair(self.verification_gas_limit, self.call_gas_limit)

    @property
    def gas_fees(self) -> bytes:
        return pack_uint128_pair(self.max_priority_fee_per_gas, self.max_fee_per_gas)

    @property
    def paymaster(self) -> str | None:
        if len(self.paymaster_and_data) < PAYMASTER_ADDRESS_LENGTH:
            return None
        return normalize_address("0x" + self.paymaster_and_data[:PAYMASTER_ADDRESS_LENGTH].hex())

    @property
    def factory(self) -> str | None:
        if len(self.init_code) < 20:
            return None
        return normalize_address("0x" + self.init_code[:20].hex())

    def pack(self) -> bytes:
        """ABI encode the unsigned operation, hashing dynamic fields."""
        return abi_encode(
            _PACKED_TYPES,
            [
                normalize_address(self.sender),
                self.nonce,
                keccak256(self.init_code),
                keccak256(self.call_data),
                self.account_gas_limits,
                self.pre_verification_gas,
                self.gas_fees,
                keccak256(self.paymaster_and_data),
            ],
        )

    def hash(self, entry_point: str, chain_id: int) -> bytes:
        """
        Get UserOp hash for signing.

        Args:
            entry_point: EntryPoint contract address
            chain_id: Chain ID for replay protection

        Returns:
            32-byte hash to be signed by an owner
        """
        return keccak256(
            abi_encode(
                ["bytes32", "address", "uint256"],
                [keccak256(self.pack()), normalize_address(entry_point), chain_id],
            )
        )

    def max_gas(self, data_offset: int = PAYMASTER_DATA_OFFSET_V07) -> int:
        total = self.verification_gas_limit + self.call_gas_limit + self.pre_verification_gas
        # Only the v0.7 layout carries paymaster gas ceilings
        if data_offset == PAYMASTER_DATA_OFFSET_V07 and len(self.paymaster_and_data) >= data_offset:
            total += int.from_bytes(self.paymaster_and_data[20:36], "big")
            total += int.from_bytes(self.paymaster_and_data[36:52], "big")
        return total

    def max_cost(self, data_offset: int = PAYMASTER_DATA_OFFSET_V07) -> int:
        """Upper bound of what the operation can cost its payer."""
        return self.max_gas(data_offset) * self.max_fee_per_gas

    def with_signature(self, signature: bytes) -> "UserOperation":
        return replace(self, signature=signature)

    def with_paymaster_and_data(self, paymaster_and_data: bytes) -> "UserOperation":
        return replace(self, paymaster_and_data=paymaster_and_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the packed JSON-RPC shape."""
        return {
            "sender": normalize_address(self.sender),
            "nonce": hex(self.nonce),
            "initCode": "0x" + self.init_code.hex(),
            "callData": "0x" + self.call_data.hex(),
            "accountGasLimits": "0x" + self.account_gas_limits.hex(),
            "preVerificationGas": hex(self.pre_verification_gas),
            "gasFees": "0x" + self.gas_fees.hex(),
            "paymasterAndData": "0x" + self.paymaster_and_data.hex(),
            "signature": "0x" + self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserOperation":
        def _bytes(key: str) -> bytes:
            value = data.get(key) or "0x"
            return bytes.fromhex(value[2:] if value.startswith("0x") else value)

        def _int(key: str) -> int:
            value = data.get(key, 0)
            return int(value, 16) if isinstance(value, str) else int(value)

        verification_gas_limit, call_gas_limit = unpack_uint128_pair(_bytes("accountGasLimits"))
        max_priority_fee, max_fee = unpack_uint128_pair(_bytes("gasFees"))
        return cls(
            sender=normalize_address(data["sender"]),
            nonce=_int("nonce"),
            init_code=_bytes("initCode"),
            call_data=_bytes("callData"),
            call_gas_limit=call_gas_limit,
            verification_gas_limit=verification_gas_limit,
            pre_verification_gas=_int("preVerificationGas"),
            max_priority_fee_per_gas=max_priority_fee,
            max_fee_per_gas=max_fee,
            paymaster_and_data=_bytes("paymasterAndData"),
            signature=_bytes("signature"),
        )


# ==================== Sponsorship blob ====================


@dataclass(frozen=True)
class SponsorshipData:
    """Decoded paymaster_and_data blob."""

    paymaster: str
    verification_gas_limit: int
    post_op_gas_limit: int
    signature: bytes
    valid_until: int
    valid_after: int


def encode_paymaster_and_data(
    paymaster: str,
    signature: bytes,
    valid_until: int,
    valid_after: int,
    verification_gas_limit: int = 0,
    post_op_gas_limit: int = 0,
    data_offset: int = PAYMASTER_DATA_OFFSET_V07,
) -> bytes:
    """
    Build a sponsorship blob:
    paymaster(20) [|| verification gas(16) || post-op gas(16)] || signature || validUntil(8) || validAfter(8)
    """
    blob = bytes.fromhex(normalize_address(paymaster)[2:])
    if data_offset == PAYMASTER_DATA_OFFSET_V07:
        blob += pack_uint128_pair(verification_gas_limit, post_op_gas_limit)
    elif data_offset != PAYMASTER_ADDRESS_LENGTH:
        raise MalformedSponsorshipDataError(f"Unsupported paymaster data offset {data_offset}")
    if not (0 <= valid_until <= MAX_UINT48 and 0 <= valid_after <= MAX_UINT48):
        raise MalformedSponsorshipDataError("Validity window bounds must fit in 48 bits")
    return (
        blob
        + signature
        + valid_until.to_bytes(TIMESTAMP_LENGTH, "big")
        + valid_after.to_bytes(TIMESTAMP_LENGTH, "big")
    )


def parse_paymaster_and_data(
    blob: bytes,
    data_offset: int = PAYMASTER_DATA_OFFSET_V07,
) -> SponsorshipData:
    """
    Decode a sponsorship blob whose custom data starts at ``data_offset``.

    The signature sits between the offset and the trailing 16 bytes of
    validity window and must be 64 or 65 bytes long.

    Raises:
        MalformedSponsorshipDataError: If the layout cannot be decoded.
    """
    if data_offset not in (PAYMASTER_ADDRESS_LENGTH, PAYMASTER_DATA_OFFSET_V07):
        raise MalformedSponsorshipDataError(f"Unsupported paymaster data offset {data_offset}")
    minimum = data_offset + COMPACT_SIGNATURE_LENGTH + 2 * TIMESTAMP_LENGTH
    if len(blob) < minimum:
        raise MalformedSponsorshipDataError(
            f"Paymaster data too short: expected at least {minimum} bytes, got {len(blob)}"
        )
    paymaster_bytes = blob[:PAYMASTER_ADDRESS_LENGTH]
    if int.from_bytes(paymaster_bytes, "big") == 0:
        raise MalformedSponsorshipDataError("Paymaster address cannot be zero")

    verification_gas_limit = post_op_gas_limit = 0
    if data_offset == PAYMASTER_DATA_OFFSET_V07:
        verification_gas_limit, post_op_gas_limit = unpack_uint128_pair(blob[20:52])

    custom = blob[data_offset:]
    signature = custom[: -2 * TIMESTAMP_LENGTH]
    if len(signature) not in (COMPACT_SIGNATURE_LENGTH, SIGNATURE_LENGTH):
        raise MalformedSponsorshipDataError(
            f"Verifier signature must be 64 or 65 bytes, got {len(signature)}"
        )
    valid_until = int.from_bytes(custom[-16:-8], "big")
    valid_after = int.from_bytes(custom[-8:], "big")
    return SponsorshipData(
        paymaster=normalize_address("0x" + paymaster_bytes.hex()),
        verification_gas_limit=verification_gas_limit,
        post_op_gas_limit=post_op_gas_limit,
        signature=signature,
        valid_until=valid_until,
        valid_after=valid_after,
    )


# ==================== Validation data ====================


def pack_validation_data(sig_failed: bool, valid_until: int = 0, valid_after: int = 0) -> int:
    """Pack (authorizer, validUntil, validAfter) into an ERC-4337 validation word."""
    return (1 if sig_failed else 0) | (valid_until << 160) | (valid_after << (160 + 48))


def unpack_validation_data(validation_data: int) -> Tuple[bool, int, int]:
    sig_failed = (validation_data & (2**160 - 1)) == 1
    valid_until = (validation_data >> 160) & MAX_UINT48
    valid_after = (validation_data >> (160 + 48)) & MAX_UINT48
    return sig_failed, valid_until, valid_after


# ==================== Basic structural validation ====================


def validate_address(address: str, field_name: str) -> None:
    try:
        normalize_address(address)
    except ValueError:
        raise UserOperationValidationError(f"{field_name} is not a valid address") from None
    if is_zero_address(address):
        raise UserOperationValidationError(f"{field_name} cannot be zero address")


def validate_gas_amount(gas: int, field_name: str, minimum: int, maximum: int) -> None:
    if gas > maximum:
        raise UserOperationValidationError(f"{field_name} too high: {gas} > {maximum}")
    if gas < minimum:
        raise UserOperationValidationError(f"{field_name} too low: {gas} < {minimum}")


def validate_field_ranges(user_op: UserOperation) -> None:
    """Every numeric field must fit its packed ABI slot."""
    if not 0 <= user_op.nonce <= MAX_UINT256:
        raise UserOperationValidationError("Nonce must fit in 256 bits")
    if not 0 <= user_op.pre_verification_gas <= MAX_UINT256:
        raise UserOperationValidationError("Pre-verification gas must fit in 256 bits")
    for name, value in (
        ("Verification gas limit", user_op.verification_gas_limit),
        ("Call gas limit", user_op.call_gas_limit),
        ("Max priority fee", user_op.max_priority_fee_per_gas),
        ("Max fee per gas", user_op.max_fee_per_gas),
    ):
        if not 0 <= value <= MAX_UINT128:
            raise UserOperationValidationError(f"{name} must fit in 128 bits")


def validate_gas_fees(max_fee: int, priority_fee: int) -> None:
    validate_gas_amount(max_fee, "Max fee per gas", MIN_GAS_PRICE, MAX_FEE_PER_GAS)
    validate_gas_amount(priority_fee, "Max priority fee", 0, MAX_PRIORITY_FEE)
    if priority_fee > max_fee:
        raise UserOperationValidationError(
            "Max priority fee cannot be higher than max fee per gas"
        )


def validate_init_code(init_code: bytes) -> None:
    if not init_code:
        return
    if len(init_code) < 20:
        raise UserOperationValidationError("InitCode too short - must be at least 20 bytes")
    if int.from_bytes(init_code[:20], "big") == 0:
        raise UserOperationValidationError("Factory address in initCode cannot be zero")


def validate_paymaster_data(paymaster_and_data: bytes) -> None:
    if not paymaster_and_data:
        return
    if len(paymaster_and_data) < PAYMASTER_ADDRESS_LENGTH:
        raise UserOperationValidationError("Paymaster data too short - must be at least 20 bytes")
    if int.from_bytes(paymaster_and_data[:20], "big") == 0:
        raise UserOperationValidationError("Paymaster address cannot be zero")
    if PAYMASTER_ADDRESS_LENGTH < len(paymaster_and_data) < PAYMASTER_DATA_OFFSET_V07:
        raise UserOperationValidationError(
            "Incomplete paymaster data - expected verification and post-op gas limits"
        )


def validate_user_operation_basic(user_op: UserOperation) -> None:
    """
    Structural checks that need no chain state.

    Raises:
        UserOperationValidationError: On the first violated rule.
    """
    validate_address(user_op.sender, "Sender")
    validate_field_ranges(user_op)
    if not user_op.call_data and not user_op.init_code:
        raise UserOperationValidationError(
            "Both callData and initCode cannot be empty - account creation or execution required"
        )
    validate_init_code(user_op.init_code)
    validate_paymaster_data(user_op.paymaster_and_data)
    if not user_op.signature:
        raise UserOperationValidationError("Signature cannot be empty")
