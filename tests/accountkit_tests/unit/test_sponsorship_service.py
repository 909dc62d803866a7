import pytest

from accountkit.core.aa_exceptions import InvalidTimestampError, VerifierNotFoundError
from accountkit.core.contracts.paymaster import SponsorshipValidation, sponsorship_hash
from accountkit.core.contracts.user_operation import UserOperation, parse_paymaster_and_data
from accountkit.core.crypto_utils import recover_address, to_eth_signed_message_hash
from accountkit.core.sponsorship_service import (
    SponsorshipRequest,
    SponsorshipSigner,
    VerifierKeyManager,
)

NOW = 1_700_000_000


@pytest.fixture
def key_manager(verifier):
    return VerifierKeyManager({"primary": verifier.private_key})


@pytest.fixture
def signer(key_manager, paymaster):
    return SponsorshipSigner(
        key_manager, paymaster=paymaster.address, chain_id=paymaster.chain_id, data_offset=52
    )


@pytest.fixture
def user_op(target):
    return UserOperation(sender=target, nonce=7, call_data=b"\x01\x02")


class TestVerifierKeyManager:
    def test_loads_valid_keys_and_skips_invalid(self, verifier):
        manager = VerifierKeyManager({"primary": verifier.private_key, "broken": "not-hex"})
        assert manager.verifier_count == 1
        assert manager.has_verifier("primary")
        assert not manager.has_verifier("broken")
        assert manager.address_of("primary") == verifier.address

    def test_unknown_verifier(self, key_manager):
        with pytest.raises(VerifierNotFoundError):
            key_manager.sign("missing", b"\x00" * 32)

    def test_sign_is_eip191_wrapped(self, key_manager, verifier):
        message_hash = b"\x11" * 32
        signature = key_manager.sign("primary", message_hash)
        assert recover_address(to_eth_signed_message_hash(message_hash), signature) == verifier.address


class TestSponsorshipSigner:
    def test_rejects_expired_window(self, signer, user_op):
        request = SponsorshipRequest(user_op=user_op, valid_until=NOW, verifier="primary")
        with pytest.raises(InvalidTimestampError):
            signer.sign_sponsorship(request, now=NOW)

    def test_rejects_inverted_window(self, signer, user_op):
        request = SponsorshipRequest(
            user_op=user_op, valid_until=NOW + 10, valid_after=NOW + 20, verifier="primary"
        )
        with pytest.raises(InvalidTimestampError):
            signer.sign_sponsorship(request, now=NOW)

    def test_rejects_unknown_verifier(self, signer, user_op):
        request = SponsorshipRequest(user_op=user_op, valid_until=NOW + 3600, verifier="nobody")
        with pytest.raises(VerifierNotFoundError):
            signer.sign_sponsorship(request, now=NOW)

    def test_response_carries_decodable_blob(self, signer, user_op, paymaster, verifier):
        request = SponsorshipRequest(
            user_op=user_op, valid_until=NOW + 3600, valid_after=NOW - 60, verifier="primary"
        )
        response = signer.sign_sponsorship(request, now=NOW)

        data = parse_paymaster_and_data(response.paymaster_and_data, 52)
        assert data.paymaster == paymaster.address
        assert data.valid_until == NOW + 3600
        assert data.valid_after == NOW - 60
        assert data.signature == response.signature
        assert data.verification_gas_limit == request.verification_gas_limit

        binding = sponsorship_hash(user_op, paymaster.chain_id, paymaster.address, NOW + 3600, NOW - 60)
        assert recover_address(to_eth_signed_message_hash(binding), response.signature) == verifier.address
        assert response.verifier_address == verifier.address
        assert response.to_dict()["paymaster_and_data"].startswith("0x")

    def test_signed_operation_is_approved_by_paymaster(self, signer, user_op, paymaster):
        request = SponsorshipRequest(user_op=user_op, valid_until=NOW + 3600, verifier="primary")
        sponsored = signer.sign_user_operation(request, now=NOW)

        context, outcome = paymaster.validate_paymaster_user_op(
            sponsored, b"\x00" * 32, max_cost=10**15, now=NOW + 1
        )
        assert outcome is SponsorshipValidation.APPROVED
        assert context is not None

    def test_metrics(self, signer, user_op):
        assert signer.metrics() == {"verifier_count": 1, "signatures_issued": 0, "service_status": "healthy"}
        signer.sign_sponsorship(
            SponsorshipRequest(user_op=user_op, valid_until=NOW + 60, verifier="primary"), now=NOW
        )
        assert signer.metrics()["signatures_issued"] == 1
