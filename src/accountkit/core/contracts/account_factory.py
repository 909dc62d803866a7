"""
Factory for deploying smart accounts at deterministic addresses.

The predicted address and the deployed address come from the same
derivation, so a counterfactual account can be funded and referenced
before it exists.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from ..aa_exceptions import ValidationError
from ..config import ANVIL
from ..crypto_utils import normalize_address
from .address_derivation import (
    Salt,
    encode_call,
    function_selector,
    multi_owner_initializer,
    predict_account_address,
    salt_to_bytes,
    single_owner_initializer,
)
from .events import ACCOUNT_CREATED, ContractEvent
from .owner_registry import normalize_owner, normalize_owner_list
from .signers import DEFAULT_SIGNATURE_SCHEME, SignatureScheme
from .smart_account import SmartAccount

logger = logging.getLogger(__name__)

DEFAULT_FACTORY_ADDRESS = ANVIL.factory
DEFAULT_IMPLEMENTATION_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"

CREATE_ACCOUNT_SIGNATURE = "createAccount(address,uint256)"
CREATE_ACCOUNT_WITH_OWNERS_SIGNATURE = "createAccountWithOwners(address[],uint256)"
CREATE_ACCOUNT_SELECTOR = function_selector(CREATE_ACCOUNT_SIGNATURE)
CREATE_ACCOUNT_WITH_OWNERS_SELECTOR = function_selector(CREATE_ACCOUNT_WITH_OWNERS_SIGNATURE)

OwnerConfig = Union[str, Sequence[str]]


@dataclass
class AccountFactory:
    """
    Deploys smart accounts behind a deterministic address.

    Single-owner and multi-owner accounts use different initializers, so
    ``[owner]`` and ``owner`` with the same salt are different accounts.
    Re-deploying an existing configuration returns the existing account.
    """

    address: str = DEFAULT_FACTORY_ADDRESS
    implementation: str = DEFAULT_IMPLEMENTATION_ADDRESS
    entry_point: str = ""
    signature_scheme: SignatureScheme = field(default=DEFAULT_SIGNATURE_SCHEME, repr=False)

    # Deployed accounts
    accounts: Dict[str, SmartAccount] = field(default_factory=dict, repr=False)
    events: List[ContractEvent] = field(default_factory=list, repr=False)

    # Called with every newly deployed account (EntryPoint registration)
    on_deploy: Optional[Callable[[SmartAccount], None]] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.address = normalize_address(self.address)
        self.implementation = normalize_address(self.implementation)
        if self.entry_point:
            self.entry_point = normalize_address(self.entry_point)
        self._lock = threading.RLock()

    # ==================== Prediction ====================

    def get_address(self, owner: str, salt: Salt) -> str:
        """
        Get deterministic address without deploying.

        Useful for counterfactual deployment.

        Raises:
            InvalidOwnerError: If the owner is null or malformed
        """
        initializer = single_owner_initializer(normalize_owner(owner))
        return predict_account_address(self.address, self.implementation, initializer, salt)

    def get_address_with_owners(self, owners: Sequence[str], salt: Salt) -> str:
        initializer = multi_owner_initializer(normalize_owner_list(owners))
        return predict_account_address(self.address, self.implementation, initializer, salt)

    def predict_address(self, owners: OwnerConfig, salt: Salt) -> str:
        if isinstance(owners, str):
            return self.get_address(owners, salt)
        return self.get_address_with_owners(owners, salt)

    def is_deployed(self, owners: OwnerConfig, salt: Salt) -> bool:
        return self.predict_address(owners, salt) in self.accounts

    # ==================== Deployment ====================

    def create_account(self, owner: str, salt: Salt) -> SmartAccount:
        """
        Create a single-owner smart account.

        Args:
            owner: Account owner address
            salt: Salt for deterministic address

        Returns:
            The deployed account (the existing one on re-deployment)
        """
        owner = normalize_owner(owner)
        address = self.get_address(owner, salt)
        return self._deploy(address, [owner], salt)

    def create_account_with_owners(self, owners: Sequence[str], salt: Salt) -> SmartAccount:
        """
        Create a multi-owner smart account; any single owner can authorize.

        Raises:
            EmptyOwnerListError, TooManyOwnersError, DuplicateOwnerError,
            InvalidOwnerListError: If the owner list is unusable
        """
        owners = normalize_owner_list(owners)
        address = self.get_address_with_owners(owners, salt)
        return self._deploy(address, owners, salt)

    def get_account(self, address: str) -> Optional[SmartAccount]:
        try:
            return self.accounts.get(normalize_address(address))
        except ValueError:
            return None

    # ==================== Init code ====================

    def build_init_code(self, owners: OwnerConfig, salt: Salt) -> bytes:
        """Operation ``init_code``: factory address followed by the factory call."""
        salt_int = int.from_bytes(salt_to_bytes(salt), "big")
        if isinstance(owners, str):
            call_data = encode_call(
                CREATE_ACCOUNT_SIGNATURE, ["address", "uint256"], [normalize_owner(owners), salt_int]
            )
        else:
            call_data = encode_call(
                CREATE_ACCOUNT_WITH_OWNERS_SIGNATURE,
                ["address[]", "uint256"],
                [normalize_owner_list(owners), salt_int],
            )
        return bytes.fromhex(self.address[2:]) + call_data

    def decode_call_data(self, call_data: bytes) -> Tuple[OwnerConfig, int]:
        """
        Decode factory call data into (owner config, salt).

        Raises:
            ValidationError: If the selector is unknown or the payload is malformed
        """
        selector, payload = call_data[:4], call_data[4:]
        try:
            if selector == CREATE_ACCOUNT_SELECTOR:
                owner, salt = abi_decode(["address", "uint256"], payload)
                return owner, salt
            if selector == CREATE_ACCOUNT_WITH_OWNERS_SELECTOR:
                owners, salt = abi_decode(["address[]", "uint256"], payload)
                return list(owners), salt
        except DecodingError as e:
            raise ValidationError(f"Malformed factory call data: {e}") from e
        raise ValidationError(f"Unknown factory selector 0x{selector.hex()}")

    def preview_from_call_data(self, call_data: bytes) -> SmartAccount:
        """
        Account the call data would deploy, without deploying it.

        Returns the live account when it already exists, otherwise a fresh
        unregistered instance with the same owners and address.
        """
        owners, salt = self.decode_call_data(call_data)
        if isinstance(owners, str):
            owner_list = [normalize_owner(owners)]
        else:
            owner_list = normalize_owner_list(owners)
        address = self.predict_address(owners, salt)
        existing = self.accounts.get(address)
        if existing is not None:
            return existing
        account = self._new_account(address)
        account.initialize(owner_list)
        return account

    def deploy_from_call_data(self, call_data: bytes) -> SmartAccount:
        owners, salt = self.decode_call_data(call_data)
        if isinstance(owners, str):
            return self.create_account(owners, salt)
        return self.create_account_with_owners(owners, salt)

    # ==================== Internal ====================

    def _new_account(self, address: str) -> SmartAccount:
        return SmartAccount(
            address=address,
            entry_point=self.entry_point,
            signature_scheme=self.signature_scheme,
        )

    def _deploy(self, address: str, owners: List[str], salt: Salt) -> SmartAccount:
        with self._lock:
            # Check if already exists
            existing = self.accounts.get(address)
            if existing is not None:
                logger.debug(
                    "Account already deployed",
                    extra={"event": "factory.account_exists", "address": address[:10]},
                )
                return existing

            account = self._new_account(address)
            account.initialize(owners)
            self.accounts[address] = account
            self.events.append(
                ContractEvent(
                    event_type=ACCOUNT_CREATED,
                    address=self.address,
                    data={
                        "account": address,
                        "owners": list(owners),
                        "salt": "0x" + salt_to_bytes(salt).hex(),
                    },
                )
            )

        logger.info(
            "Account created",
            extra={
                "event": "factory.account_created",
                "address": address[:10],
                "owner_count": len(owners),
            },
        )
        if self.on_deploy is not None:
            self.on_deploy(account)
        return account
