"""
Verifier-side signing service for paymaster sponsorships.

Holds the named verifier keys a sponsor trusts and turns sponsorship
requests into signed ``paymaster_and_data`` blobs the VerifyingPaymaster
will accept.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from eth_keys import keys

from .aa_exceptions import InvalidTimestampError, VerifierNotFoundError
from .config import PAYMASTER_DATA_OFFSET, VERIFIER_KEYS
from .contracts.paymaster import sponsorship_hash
from .contracts.user_operation import UserOperation, encode_paymaster_and_data
from .crypto_utils import load_private_key, normalize_address, sign_message_hash

logger = logging.getLogger(__name__)


class VerifierKeyManager:
    """
    Named verifier keys.

    Entries that are not valid secp256k1 private keys are skipped with a
    warning rather than failing the whole service.
    """

    def __init__(self, verifier_keys: Optional[Mapping[str, str]] = None) -> None:
        self._keys: Dict[str, keys.PrivateKey] = {}
        self._lock = threading.RLock()
        source = VERIFIER_KEYS if verifier_keys is None else verifier_keys
        for name, key_hex in source.items():
            try:
                self._keys[name] = load_private_key(key_hex)
            except (ValueError, TypeError) as e:
                logger.warning(
                    "Skipping invalid verifier key",
                    extra={"event": "sponsorship.invalid_key", "verifier": name, "error": str(e)},
                )

    @property
    def verifier_count(self) -> int:
        with self._lock:
            return len(self._keys)

    def has_verifier(self, name: str) -> bool:
        with self._lock:
            return name in self._keys

    def address_of(self, name: str) -> str:
        return self._get(name).public_key.to_checksum_address()

    def sign(self, name: str, message_hash: bytes) -> bytes:
        """EIP-191 sign ``message_hash`` with verifier ``name``; returns 65 bytes."""
        return sign_message_hash(self._get(name).to_hex(), message_hash)

    def _get(self, name: str) -> keys.PrivateKey:
        with self._lock:
            try:
                return self._keys[name]
            except KeyError:
                raise VerifierNotFoundError(
                    f"Verifier not found: {name}", details={"verifier": name}
                ) from None


@dataclass(frozen=True)
class SponsorshipRequest:
    user_op: UserOperation
    valid_until: int
    verifier: str
    valid_after: int = 0
    verification_gas_limit: int = 100_000
    post_op_gas_limit: int = 50_000


@dataclass(frozen=True)
class SponsorshipResponse:
    signature: bytes
    valid_until: int
    valid_after: int
    paymaster_and_data: bytes
    verifier_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": "0x" + self.signature.hex(),
            "valid_until": self.valid_until,
            "valid_after": self.valid_after,
            "paymaster_and_data": "0x" + self.paymaster_and_data.hex(),
            "verifier_address": self.verifier_address,
        }


class SponsorshipSigner:
    """Signs sponsorships for one paymaster on one chain."""

    def __init__(
        self,
        key_manager: VerifierKeyManager,
        paymaster: str,
        chain_id: int,
        data_offset: int = PAYMASTER_DATA_OFFSET,
    ) -> None:
        self.key_manager = key_manager
        self.paymaster = normalize_address(paymaster)
        self.chain_id = chain_id
        self.data_offset = data_offset
        self.signatures_issued = 0
        self._lock = threading.Lock()

    def sign_sponsorship(
        self,
        request: SponsorshipRequest,
        now: Optional[int] = None,
    ) -> SponsorshipResponse:
        """
        Approve ``request.user_op`` for sponsorship.

        Raises:
            InvalidTimestampError: If the window would already be closed
            VerifierNotFoundError: If the named verifier is unknown
        """
        now = int(time.time()) if now is None else now
        if request.valid_until <= now:
            raise InvalidTimestampError(
                "Invalid timestamp: valid_until must be in the future",
                details={"valid_until": request.valid_until, "now": now},
            )
        if request.valid_after > request.valid_until:
            raise InvalidTimestampError("Invalid timestamp: valid_after is after valid_until")

        message_hash = sponsorship_hash(
            request.user_op, self.chain_id, self.paymaster, request.valid_until, request.valid_after
        )
        signature = self.key_manager.sign(request.verifier, message_hash)
        paymaster_and_data = encode_paymaster_and_data(
            self.paymaster,
            signature,
            request.valid_until,
            request.valid_after,
            verification_gas_limit=request.verification_gas_limit,
            post_op_gas_limit=request.post_op_gas_limit,
            data_offset=self.data_offset,
        )
        with self._lock:
            self.signatures_issued += 1

        logger.info(
            "Sponsorship signed",
            extra={
                "event": "sponsorship.signed",
                "sender": request.user_op.sender[:10],
                "verifier": request.verifier,
                "valid_until": request.valid_until,
            },
        )
        return SponsorshipResponse(
            signature=signature,
            valid_until=request.valid_until,
            valid_after=request.valid_after,
            paymaster_and_data=paymaster_and_data,
            verifier_address=self.key_manager.address_of(request.verifier),
        )

    def sign_user_operation(self, request: SponsorshipRequest, now: Optional[int] = None) -> UserOperation:
        """Return a copy of the operation carrying the signed sponsorship."""
        response = self.sign_sponsorship(request, now=now)
        return request.user_op.with_paymaster_and_data(response.paymaster_and_data)

    def metrics(self) -> Dict[str, Any]:
        return {
            "verifier_count": self.key_manager.verifier_count,
            "signatures_issued": self.signatures_issued,
            "service_status": "healthy",
        }
