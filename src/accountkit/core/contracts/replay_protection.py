"""
Replay protection for smart accounts.

A replay identifier is a 256-bit nonce split into a 192-bit key and a 64-bit
sequence (``key << 64 | sequence``). Every key is an independent slot, so
unrelated operation streams never block each other. Within a slot an
identifier is consumed at most once; identifiers may be consumed out of order.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Set

logger = logging.getLogger(__name__)

SEQUENCE_BITS = 64
SEQUENCE_MASK = (1 << SEQUENCE_BITS) - 1
MAX_NONCE = 2**256 - 1


def pack_nonce(key: int, sequence: int) -> int:
    if not 0 <= sequence <= SEQUENCE_MASK:
        raise ValueError("Nonce sequence must fit in 64 bits")
    if not 0 <= key < 2**192:
        raise ValueError("Nonce key must fit in 192 bits")
    return (key << SEQUENCE_BITS) | sequence


def nonce_key(nonce: int) -> int:
    return nonce >> SEQUENCE_BITS


def nonce_sequence(nonce: int) -> int:
    return nonce & SEQUENCE_MASK


class ReplayState:
    """
    Per-account record of consumed replay identifiers.

    ``check_and_consume`` is the only mutator and behaves as an atomic
    compare-and-set: of any number of concurrent callers presenting the same
    identifier, exactly one observes ``True``.
    """

    def __init__(self, account: str = "") -> None:
        self.account = account
        self._consumed: Dict[int, Set[int]] = {}
        self._lock = threading.Lock()

    def is_consumed(self, nonce: int) -> bool:
        with self._lock:
            return nonce_sequence(nonce) in self._consumed.get(nonce_key(nonce), ())

    def check_and_consume(self, nonce: int) -> bool:
        """
        Mark ``nonce`` as used.

        Returns:
            True if this call consumed it, False if it was already consumed.
        """
        if not 0 <= nonce <= MAX_NONCE:
            return False
        key, sequence = nonce_key(nonce), nonce_sequence(nonce)
        with self._lock:
            slot = self._consumed.setdefault(key, set())
            if sequence in slot:
                return False
            slot.add(sequence)

        logger.debug(
            "Replay identifier consumed",
            extra={
                "event": "replay.consumed",
                "account": self.account[:10],
                "key": key,
                "sequence": sequence,
            },
        )
        return True

    def next_nonce(self, key: int = 0) -> int:
        """Suggested next identifier for ``key``: one past the highest consumed sequence."""
        with self._lock:
            slot = self._consumed.get(key)
            sequence = max(slot) + 1 if slot else 0
        return pack_nonce(key, sequence)

    def consumed_count(self, key: int | None = None) -> int:
        with self._lock:
            if key is not None:
                return len(self._consumed.get(key, ()))
            return sum(len(slot) for slot in self._consumed.values())
