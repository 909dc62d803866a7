"""
Deterministic (CREATE2 style) address derivation.

    address = keccak256(0xff || deployer || salt || keccak256(init_code))[12:]

The same functions are used to predict an address before deployment and to
place the account at deployment time, so the two can never drift apart.
"""

from __future__ import annotations

from typing import Iterable, List, Sequence, Union

from eth_abi import encode as abi_encode
from eth_utils import to_checksum_address

from ..crypto_utils import keccak256, normalize_address

CREATE2_PREFIX = b"\xff"

# ERC-1967 proxy creation code; constructor args (implementation, initializer) are appended
ACCOUNT_PROXY_CREATION_CODE = bytes.fromhex(
    "608060405260405161041038038061041083398101604081905261002291610268565b"
)

SINGLE_OWNER_INITIALIZER = "initialize(address)"
MULTI_OWNER_INITIALIZER = "initializeWithOwners(address[])"

Salt = Union[int, bytes]


def function_selector(signature: str) -> bytes:
    """First 4 bytes of keccak256 of a canonical function signature."""
    return keccak256(signature.encode("ascii"))[:4]


def encode_call(signature: str, types: Sequence[str], args: Sequence[object]) -> bytes:
    return function_selector(signature) + abi_encode(list(types), list(args))


def salt_to_bytes(salt: Salt) -> bytes:
    """Normalize a salt to 32 big-endian bytes."""
    if isinstance(salt, bytes):
        if len(salt) != 32:
            raise ValueError(f"Salt must be 32 bytes, got {len(salt)}")
        return salt
    if not 0 <= salt < 2**256:
        raise ValueError("Salt must fit in 256 bits")
    return salt.to_bytes(32, "big")


def init_code_hash(init_code: bytes) -> bytes:
    return keccak256(init_code)


def compute_create2_address(deployer: str, salt: Salt, code_hash: bytes) -> str:
    """
    Derive the address a deployer will create for (salt, init code hash).

    Args:
        deployer: Address of the deploying factory
        salt: 32-byte salt or integer salt
        code_hash: keccak256 of the initialization code

    Returns:
        Checksummed account address
    """
    if len(code_hash) != 32:
        raise ValueError("Init code hash must be 32 bytes")
    deployer_bytes = bytes.fromhex(normalize_address(deployer)[2:])
    digest = keccak256(CREATE2_PREFIX + deployer_bytes + salt_to_bytes(salt) + code_hash)
    return to_checksum_address(digest[12:])


def single_owner_initializer(owner: str) -> bytes:
    return encode_call(SINGLE_OWNER_INITIALIZER, ["address"], [normalize_address(owner)])


def multi_owner_initializer(owners: Iterable[str]) -> bytes:
    # Order is preserved: the same owners in a different order is a different account
    ordered: List[str] = [normalize_address(owner) for owner in owners]
    return encode_call(MULTI_OWNER_INITIALIZER, ["address[]"], [ordered])


def account_init_code(implementation: str, initializer: bytes) -> bytes:
    """Proxy creation code followed by ABI encoded (implementation, initializer)."""
    return ACCOUNT_PROXY_CREATION_CODE + abi_encode(
        ["address", "bytes"], [normalize_address(implementation), initializer]
    )


def predict_account_address(
    deployer: str,
    implementation: str,
    initializer: bytes,
    salt: Salt,
) -> str:
    code = account_init_code(implementation, initializer)
    return compute_create2_address(deployer, salt, init_code_hash(code))
