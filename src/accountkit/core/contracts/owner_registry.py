"""
Owner registry for smart accounts.

Backed by a single set: membership test, insert and remove are O(1) and
enumeration is O(n). Enumeration order carries no meaning.
"""

from __future__ import annotations

import logging
import threading
from typing import FrozenSet, Iterable, Iterator, List, Set

from ..aa_exceptions import (
    AlreadyInitializedError,
    CannotRemoveSelfError,
    DuplicateOwnerError,
    EmptyOwnerListError,
    InvalidOwnerError,
    InvalidOwnerListError,
    LastOwnerError,
    NotAuthorizedError,
    TooManyOwnersError,
    UnknownOwnerError,
)
from ..config import MAX_OWNERS
from ..crypto_utils import is_zero_address, normalize_address

logger = logging.getLogger(__name__)


def normalize_owner(owner: str) -> str:
    try:
        normalized = normalize_address(owner)
    except ValueError:
        raise InvalidOwnerError(f"Invalid owner address: {owner!r}") from None
    if is_zero_address(normalized):
        raise InvalidOwnerError("Owner cannot be the zero address")
    return normalized


def normalize_owner_list(owners: Iterable[str]) -> List[str]:
    """
    Validate an initial owner list and return it checksummed, order preserved.

    Raises:
        InvalidOwnerListError: If the list is empty, longer than MAX_OWNERS,
            contains a null/malformed entry or contains duplicates.
    """
    owners = list(owners)
    if not owners:
        raise EmptyOwnerListError("Owner list cannot be empty")
    if len(owners) > MAX_OWNERS:
        raise TooManyOwnersError(
            f"Owner list has {len(owners)} entries, maximum is {MAX_OWNERS}",
            details={"count": len(owners), "max": MAX_OWNERS},
        )
    normalized: List[str] = []
    seen: Set[str] = set()
    for index, owner in enumerate(owners):
        try:
            checked = normalize_owner(owner)
        except InvalidOwnerError as exc:
            raise InvalidOwnerListError(
                f"Invalid owner at index {index}: {exc.message}", details={"index": index}
            ) from exc
        if checked in seen:
            raise DuplicateOwnerError(
                f"Duplicate owner at index {index}: {checked}", details={"index": index}
            )
        seen.add(checked)
        normalized.append(checked)
    return normalized


class OwnerRegistry:
    """
    Set of identities authorized to sign for one account.

    Invariants:
        - never empty once initialized
        - no duplicates, no zero address
        - at most MAX_OWNERS members
        - only an existing owner can mutate the set

    Thread Safety: mutations and reads are serialized by an RLock.
    """

    def __init__(self, account: str = "") -> None:
        self.account = account
        self._owners: Set[str] = set()
        self._initialized = False
        self._lock = threading.RLock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, owners: Iterable[str]) -> None:
        """
        Set the initial owners.

        Raises:
            AlreadyInitializedError: If called more than once.
            InvalidOwnerListError: If the list violates any owner-set invariant.
        """
        with self._lock:
            if self._initialized:
                raise AlreadyInitializedError(
                    f"Owner registry for {self.account or 'account'} already initialized"
                )
            self._owners = set(normalize_owner_list(owners))
            self._initialized = True

    def is_owner(self, identity: str) -> bool:
        try:
            normalized = normalize_address(identity)
        except ValueError:
            return False
        with self._lock:
            return normalized in self._owners

    def list_owners(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._owners)

    def add_owner(self, caller: str, new_owner: str) -> str:
        """
        Add ``new_owner``; ``caller`` must already be an owner.

        Returns:
            The checksummed owner that was added
        """
        with self._lock:
            self._require_owner(caller)
            normalized = normalize_owner(new_owner)
            if normalized in self._owners:
                raise InvalidOwnerError(f"{normalized} is already an owner")
            if len(self._owners) >= MAX_OWNERS:
                raise TooManyOwnersError(
                    f"Account already has the maximum of {MAX_OWNERS} owners"
                )
            self._owners.add(normalized)

        logger.info(
            "Owner added",
            extra={
                "event": "owners.added",
                "account": self.account[:10],
                "owner": normalized[:10],
            },
        )
        return normalized

    def remove_owner(self, caller: str, target: str) -> str:
        """
        Remove ``target``; ``caller`` must be a different, current owner.

        Returns:
            The checksummed owner that was removed
        """
        with self._lock:
            caller_normalized = self._require_owner(caller)
            try:
                normalized = normalize_address(target)
            except ValueError:
                raise UnknownOwnerError(f"{target!r} is not an owner") from None
            if normalized == caller_normalized:
                raise CannotRemoveSelfError("An owner cannot remove itself")
            if normalized not in self._owners:
                raise UnknownOwnerError(f"{normalized} is not an owner")
            if len(self._owners) <= 1:
                raise LastOwnerError("Cannot remove the last owner")
            self._owners.discard(normalized)

        logger.info(
            "Owner removed",
            extra={
                "event": "owners.removed",
                "account": self.account[:10],
                "owner": normalized[:10],
            },
        )
        return normalized

    def _require_owner(self, caller: str) -> str:
        try:
            normalized = normalize_address(caller)
        except ValueError:
            raise NotAuthorizedError("Caller is not an owner") from None
        if normalized not in self._owners:
            raise NotAuthorizedError("Caller is not an owner", details={"caller": normalized})
        return normalized

    def __contains__(self, identity: object) -> bool:
        return isinstance(identity, str) and self.is_owner(identity)

    def __iter__(self) -> Iterator[str]:
        return iter(self.list_owners())

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)
