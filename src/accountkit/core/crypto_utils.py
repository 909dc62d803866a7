"""Utility helpers for secp256k1 key management, keccak hashing and recoverable signatures."""

from __future__ import annotations

from Crypto.Hash import keccak
from cryptography.hazmat.primitives.asymmetric import ec
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as EthKeysValidationError
from eth_utils import is_hex_address, to_checksum_address

_CURVE = ec.SECP256K1()
_CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

ZERO_ADDRESS = "0x" + "00" * 20
ETH_SIGNED_MESSAGE_PREFIX = b"\x19Ethereum Signed Message:\n32"

SIGNATURE_LENGTH = 65
COMPACT_SIGNATURE_LENGTH = 64

def keccak256(data: bytes) -> bytes:
    """Compute keccak256 hash (same as Ethereum)."""
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()

def _strip_hex_prefix(value: str) -> str:
    return value[2:] if value[:2] in ("0x", "0X") else value

def _normalize_private_value(value: int) -> int:
    normalized = value % _CURVE_ORDER
    if normalized == 0:
        normalized = 1
    return normalized

def _private_key_to_hex(private_key: ec.EllipticCurvePrivateKey) -> str:
    return private_key.private_numbers().private_value.to_bytes(32, "big").hex()

def _public_key_to_hex(public_key: ec.EllipticCurvePublicKey) -> str:
    numbers = public_key.public_numbers()
    return (numbers.x.to_bytes(32, "big") + numbers.y.to_bytes(32, "big")).hex()

def load_private_key(private_hex: str) -> keys.PrivateKey:
    value = _normalize_private_value(int(_strip_hex_prefix(private_hex), 16))
    return keys.PrivateKey(value.to_bytes(32, "big"))

def generate_secp256k1_keypair_hex() -> tuple[str, str]:
    private_key = ec.generate_private_key(_CURVE)
    return _private_key_to_hex(private_key), _public_key_to_hex(private_key.public_key())

def deterministic_keypair_from_seed(seed: bytes) -> tuple[str, str]:
    if len(seed) < 32:
        seed = seed.ljust(32, b"\x00")
    private_value = _normalize_private_value(int.from_bytes(seed[:32], "big"))
    private_key = ec.derive_private_key(private_value, _CURVE)
    return _private_key_to_hex(private_key), _public_key_to_hex(private_key.public_key())

def derive_public_key_hex(private_hex: str) -> str:
    return load_private_key(private_hex).public_key.to_bytes().hex()

def public_key_to_address(public_hex: str) -> str:
    """
    Derive the checksummed account address for an uncompressed public key.

    Args:
        public_hex: 64-byte public key (x || y) as hex

    Returns:
        EIP-55 checksummed address (last 20 bytes of keccak256(pubkey))
    """
    raw = bytes.fromhex(_strip_hex_prefix(public_hex))
    if len(raw) != 64:
        raise ValueError("Public key hex must be 64 bytes (uncompressed without prefix).")
    return to_checksum_address(keccak256(raw)[12:])

def private_key_to_address(private_hex: str) -> str:
    return load_private_key(private_hex).public_key.to_checksum_address()

def generate_account() -> tuple[str, str]:
    """Generate a fresh key and return ``(private_key_hex, address)``."""
    private_hex, public_hex = generate_secp256k1_keypair_hex()
    return private_hex, public_key_to_address(public_hex)

def normalize_address(address: str) -> str:
    """
    Return the checksummed form of ``address``.

    Raises:
        ValueError: If the value is not a 20-byte hex address.
    """
    if not isinstance(address, str) or not is_hex_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return to_checksum_address(address)

def is_zero_address(address: str) -> bool:
    return int(_strip_hex_prefix(address) or "0", 16) == 0

def to_eth_signed_message_hash(message_hash: bytes) -> bytes:
    """Wrap a 32-byte hash with the EIP-191 personal-message prefix."""
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes.")
    return keccak256(ETH_SIGNED_MESSAGE_PREFIX + message_hash)

def _validate_signature_range(r: int, s: int) -> None:
    """
    Ensure signature components fall within the curve order.

    Raises:
        ValueError: If either component is out of range.
    """
    if not (1 <= r < _CURVE_ORDER):
        raise ValueError("Signature r component out of range.")
    if not (1 <= s < _CURVE_ORDER):
        raise ValueError("Signature s component out of range.")

def is_canonical_signature(r: int, s: int) -> bool:
    """
    Check whether signature components are already canonical.

    Args:
        r: Signature r component
        s: Signature s component

    Returns:
        True if components fall within range and have low-S form.
    """
    try:
        _validate_signature_range(r, s)
    except ValueError:
        return False
    return s <= _CURVE_ORDER // 2

def split_signature(signature: bytes) -> tuple[int, int, int]:
    """
    Split a recoverable signature into ``(r, s, recovery_id)``.

    Accepts 65-byte ``r || s || v`` signatures with ``v`` in {0, 1, 27, 28}
    and 64-byte EIP-2098 compact signatures (``r || yParity·s``).

    Raises:
        ValueError: On any structural problem with the signature.
    """
    if len(signature) == SIGNATURE_LENGTH:
        r = int.from_bytes(signature[:32], "big")
        s = int.from_bytes(signature[32:64], "big")
        v = signature[64]
        if v >= 27:
            v -= 27
        if v not in (0, 1):
            raise ValueError(f"Invalid recovery id: {signature[64]}")
    elif len(signature) == COMPACT_SIGNATURE_LENGTH:
        r = int.from_bytes(signature[:32], "big")
        vs = int.from_bytes(signature[32:], "big")
        v = vs >> 255
        s = vs & ((1 << 255) - 1)
    else:
        raise ValueError(
            f"Signature must be {SIGNATURE_LENGTH} or {COMPACT_SIGNATURE_LENGTH} bytes, got {len(signature)}"
        )
    if not is_canonical_signature(r, s):
        raise ValueError("Signature is not canonical (low-S) or out of range.")
    return r, s, v

def sign_hash(private_hex: str, message_hash: bytes) -> bytes:
    """
    Sign a 32-byte hash and return a 65-byte ``r || s || v`` signature (v in {27, 28}).
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes.")
    signature = load_private_key(private_hex).sign_msg_hash(message_hash)
    return (
        signature.r.to_bytes(32, "big")
        + signature.s.to_bytes(32, "big")
        + bytes([signature.v + 27])
    )

def sign_message_hash(private_hex: str, message_hash: bytes) -> bytes:
    """Sign ``message_hash`` after wrapping it with the EIP-191 prefix."""
    return sign_hash(private_hex, to_eth_signed_message_hash(message_hash))

def to_compact_signature(signature: bytes) -> bytes:
    """Convert a 65-byte signature into its EIP-2098 64-byte form."""
    r, s, v = split_signature(signature)
    return r.to_bytes(32, "big") + ((v << 255) | s).to_bytes(32, "big")

def recover_address(message_hash: bytes, signature: bytes) -> str:
    """
    Recover the checksummed signer address for ``signature`` over ``message_hash``.

    Raises:
        ValueError: If the hash or signature is malformed or recovery fails.
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes.")
    r, s, v = split_signature(signature)
    try:
        recovered = keys.Signature(vrs=(v, r, s)).recover_public_key_from_msg_hash(message_hash)
    except (BadSignature, EthKeysValidationError) as exc:
        raise ValueError(f"Signature recovery failed: {exc}") from exc
    return recovered.to_checksum_address()

def verify_signature(address: str, message_hash: bytes, signature: bytes) -> bool:
    try:
        return recover_address(message_hash, signature) == normalize_address(address)
    except ValueError:
        return False
