import pytest

from accountkit.core.config import ENTRY_POINT_V07, PAYMASTER_DATA_OFFSET_V07
from accountkit.core.contracts.account_factory import AccountFactory
from accountkit.core.contracts.entry_point import EntryPoint
from accountkit.core.contracts.paymaster import VerifyingPaymaster
from accountkit.core.crypto_utils import (
    deterministic_keypair_from_seed,
    normalize_address,
    public_key_to_address,
    sign_message_hash,
)

CHAIN_ID = 31337
PAYMASTER_ADDRESS = normalize_address("0x9fe46736679d2d9a65f0992f2272de9f3c7fa6e0")
TARGET = normalize_address("0x70997970c51812dc3a010c7d01b50e0d17dc79c8")


class KeyPair:
    """Deterministic test key with its address."""

    def __init__(self, seed: str):
        self.private_key, self.public_key = deterministic_keypair_from_seed(seed.encode())
        self.address = public_key_to_address(self.public_key)

    def sign(self, message_hash: bytes) -> bytes:
        return sign_message_hash(self.private_key, message_hash)


@pytest.fixture
def owner():
    return KeyPair("owner-primary")


@pytest.fixture
def owners():
    return [KeyPair(f"owner-{i}") for i in range(3)]


@pytest.fixture
def stranger():
    return KeyPair("not-an-owner")


@pytest.fixture
def verifier():
    return KeyPair("sponsor-verifier")


@pytest.fixture
def sponsor_owner():
    return KeyPair("sponsor-owner")


@pytest.fixture
def entry_point():
    return EntryPoint(address=ENTRY_POINT_V07, chain_id=CHAIN_ID, paymaster_data_offset=PAYMASTER_DATA_OFFSET_V07)


@pytest.fixture
def factory(entry_point):
    factory = AccountFactory()
    entry_point.register_factory(factory)
    return factory


@pytest.fixture
def paymaster(entry_point, verifier, sponsor_owner):
    paymaster = VerifyingPaymaster(
        verifier=verifier.address,
        owner=sponsor_owner.address,
        address=PAYMASTER_ADDRESS,
        chain_id=CHAIN_ID,
        cost_ceiling=10**17,
        data_offset=PAYMASTER_DATA_OFFSET_V07,
    )
    entry_point.register_paymaster(paymaster)
    return paymaster


@pytest.fixture
def sign_op(entry_point):
    """Return a helper that signs an operation for ``entry_point`` with a KeyPair."""

    def _sign(op, key: KeyPair):
        return op.with_signature(key.sign(entry_point.get_user_op_hash(op)))

    return _sign


@pytest.fixture
def make_key():
    return KeyPair


@pytest.fixture
def target():
    return TARGET


@pytest.fixture
def chain_id():
    return CHAIN_ID
