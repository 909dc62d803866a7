"""
Signature scheme interface used by smart accounts and paymasters.

Accounts only ever ask a scheme "who signed this hash?". Owner membership and
replay protection live elsewhere, so alternative schemes (contract signers,
threshold schemes) can be swapped in without touching either.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..aa_exceptions import SignatureRecoveryError
from ..crypto_utils import recover_address


@runtime_checkable
class SignatureScheme(Protocol):
    """
    Protocol for signer recovery.

    Thread Safety: Implementations MUST be stateless or thread-safe.
    """

    def recover(self, message_hash: bytes, signature: bytes) -> str:
        """
        Recover the signer identity for ``signature`` over ``message_hash``.

        Returns:
            Checksummed signer address

        Raises:
            SignatureRecoveryError: If the signature is malformed or recovery fails.
        """
        ...


class EcdsaRecoveryScheme:
    """secp256k1 ECDSA public-key recovery (65-byte r||s||v or 64-byte EIP-2098)."""

    name = "ecdsa-secp256k1"

    def recover(self, message_hash: bytes, signature: bytes) -> str:
        try:
            return recover_address(message_hash, signature)
        except ValueError as exc:
            raise SignatureRecoveryError(
                str(exc), details={"signature_length": len(signature)}
            ) from exc


DEFAULT_SIGNATURE_SCHEME = EcdsaRecoveryScheme()
