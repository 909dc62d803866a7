"""
Verifying paymaster tests.

Each rejection reason is exercised in isolation against an otherwise valid
sponsorship, for both paymaster data layouts.
"""

from dataclasses import replace

import pytest

from accountkit.core.aa_exceptions import (
    InsufficientDepositError,
    MalformedSponsorshipDataError,
    NotAuthorizedError,
    ValidationError,
)
from accountkit.core.contracts.events import SPONSORSHIP_GRANTED
from accountkit.core.contracts.paymaster import (
    PostOpMode,
    SponsorshipValidation,
    VerifyingPaymaster,
)
from accountkit.core.contracts.user_operation import UserOperation, encode_paymaster_and_data
from accountkit.core.crypto_utils import ZERO_ADDRESS

NOW = 1_700_000_000
MAX_COST = 10**15
OP_HASH = b"\x33" * 32


def sponsor(paymaster, op, key, valid_until=NOW + 3600, valid_after=0, chain_id=None):
    """Attach a sponsorship signed by ``key`` for ``paymaster``."""
    if chain_id is None:
        binding = paymaster.get_hash(op, valid_until, valid_after)
    else:
        binding = VerifyingPaymaster(
            verifier=paymaster.verifier,
            owner=paymaster.owner,
            address=paymaster.address,
            chain_id=chain_id,
        ).get_hash(op, valid_until, valid_after)
    blob = encode_paymaster_and_data(
        paymaster.address,
        key.sign(binding),
        valid_until,
        valid_after,
        verification_gas_limit=100_000,
        post_op_gas_limit=50_000,
        data_offset=paymaster.data_offset,
    )
    return op.with_paymaster_and_data(blob)


@pytest.fixture
def op(target):
    return UserOperation(sender=target, nonce=1, call_data=b"\x01\x02")


@pytest.fixture
def legacy_paymaster(verifier, sponsor_owner, chain_id):
    return VerifyingPaymaster(
        verifier=verifier.address,
        owner=sponsor_owner.address,
        address="0x" + "ab" * 20,
        chain_id=chain_id,
        data_offset=20,
    )


@pytest.fixture(params=["v07", "legacy"])
def any_paymaster(request, paymaster, legacy_paymaster):
    return paymaster if request.param == "v07" else legacy_paymaster


class TestSponsorshipValidation:
    def test_approved(self, any_paymaster, op, verifier, target):
        sponsored = sponsor(any_paymaster, op, verifier, valid_after=NOW - 10)
        context, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.APPROVED
        assert context.sender == target
        assert context.user_op_hash == OP_HASH
        assert context.max_cost == MAX_COST
        assert (context.valid_until, context.valid_after) == (NOW + 3600, NOW - 10)

    def test_inactive(self, any_paymaster, op, verifier, sponsor_owner):
        any_paymaster.set_active(sponsor_owner.address, False)
        sponsored = sponsor(any_paymaster, op, verifier)
        context, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert context is None
        assert outcome is SponsorshipValidation.INACTIVE

    def test_inactive_checked_before_decoding(self, any_paymaster, op, sponsor_owner):
        any_paymaster.set_active(sponsor_owner.address, False)
        garbage = op.with_paymaster_and_data(b"\x01" * 21)
        _, outcome = any_paymaster.validate_paymaster_user_op(garbage, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.INACTIVE

    def test_cost_exceeds_ceiling(self, any_paymaster, op, verifier, sponsor_owner):
        any_paymaster.set_cost_ceiling(sponsor_owner.address, MAX_COST - 1)
        sponsored = sponsor(any_paymaster, op, verifier)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.COST_EXCEEDS_CEILING

    def test_cost_equal_to_ceiling_allowed(self, any_paymaster, op, verifier, sponsor_owner):
        any_paymaster.set_cost_ceiling(sponsor_owner.address, MAX_COST)
        sponsored = sponsor(any_paymaster, op, verifier)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.APPROVED

    def test_wrong_signer(self, any_paymaster, op, stranger):
        sponsored = sponsor(any_paymaster, op, stranger)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.INVALID_VERIFIER_SIGNATURE

    def test_tampered_operation(self, any_paymaster, op, verifier):
        sponsored = sponsor(any_paymaster, op, verifier)
        tampered = replace(sponsored, call_data=b"\xff")
        _, outcome = any_paymaster.validate_paymaster_user_op(tampered, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.INVALID_VERIFIER_SIGNATURE

    def test_other_chain_signature(self, any_paymaster, op, verifier):
        sponsored = sponsor(any_paymaster, op, verifier, chain_id=1)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.INVALID_VERIFIER_SIGNATURE

    def test_not_yet_valid(self, any_paymaster, op, verifier):
        sponsored = sponsor(any_paymaster, op, verifier, valid_after=NOW + 1)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.NOT_YET_VALID

    def test_expired(self, any_paymaster, op, verifier):
        sponsored = sponsor(any_paymaster, op, verifier, valid_until=NOW + 3600)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW + 7200)
        assert outcome is SponsorshipValidation.EXPIRED

    def test_valid_until_is_inclusive(self, any_paymaster, op, verifier):
        sponsored = sponsor(any_paymaster, op, verifier, valid_until=NOW)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.APPROVED

    def test_valid_after_is_inclusive(self, any_paymaster, op, verifier):
        sponsored = sponsor(any_paymaster, op, verifier, valid_after=NOW)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.APPROVED

    def test_single_second_window(self, any_paymaster, op, verifier):
        sponsored = sponsor(any_paymaster, op, verifier, valid_until=NOW, valid_after=NOW)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        assert outcome is SponsorshipValidation.APPROVED

    def test_zero_valid_until_never_expires(self, any_paymaster, op, verifier):
        sponsored = sponsor(any_paymaster, op, verifier, valid_until=0)
        _, outcome = any_paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=2**40)
        assert outcome is SponsorshipValidation.APPROVED

    def test_malformed_blob_raises(self, any_paymaster, op):
        with pytest.raises(MalformedSponsorshipDataError):
            any_paymaster.validate_paymaster_user_op(
                op.with_paymaster_and_data(b"\x01" * 40), OP_HASH, MAX_COST, now=NOW
            )

    def test_layout_mismatch_is_not_approved(self, paymaster, legacy_paymaster, op, verifier):
        # A legacy blob is too short to decode at the v0.7 offset
        legacy_blob = sponsor(legacy_paymaster, op, verifier).paymaster_and_data
        with pytest.raises(MalformedSponsorshipDataError):
            paymaster.validate_paymaster_user_op(
                op.with_paymaster_and_data(legacy_blob), OP_HASH, MAX_COST, now=NOW
            )


class TestPaymasterAdministration:
    def test_zero_verifier_rejected(self, sponsor_owner, chain_id):
        with pytest.raises(ValidationError):
            VerifyingPaymaster(
                verifier=ZERO_ADDRESS, owner=sponsor_owner.address, address="0x" + "ab" * 20, chain_id=chain_id
            )

    def test_verifier_is_read_only(self, paymaster, stranger):
        with pytest.raises(AttributeError):
            paymaster.verifier = stranger.address

    def test_only_owner_manages(self, paymaster, stranger):
        with pytest.raises(NotAuthorizedError):
            paymaster.set_cost_ceiling(stranger.address, 1)
        with pytest.raises(NotAuthorizedError):
            paymaster.set_active(stranger.address, False)
        with pytest.raises(NotAuthorizedError):
            paymaster.withdraw_to(stranger.address, stranger.address, 1)
        assert paymaster.active

    def test_negative_ceiling(self, paymaster, sponsor_owner):
        with pytest.raises(ValidationError):
            paymaster.set_cost_ceiling(sponsor_owner.address, -1)

    def test_toggle_active(self, paymaster, sponsor_owner):
        assert paymaster.toggle_active(sponsor_owner.address) is False
        assert paymaster.toggle_active(sponsor_owner.address) is True

    def test_post_op_records_sponsorship(self, paymaster, op, verifier, target):
        sponsored = sponsor(paymaster, op, verifier)
        context, _ = paymaster.validate_paymaster_user_op(sponsored, OP_HASH, MAX_COST, now=NOW)
        paymaster.post_op(PostOpMode.OP_SUCCEEDED, context, 1234)

        event = paymaster.events[-1]
        assert event.event_type == SPONSORSHIP_GRANTED
        assert event.data == {"account": target, "actual_cost": 1234, "user_op_hash": "0x" + OP_HASH.hex()}
        stats = paymaster.get_stats()
        assert stats["total_sponsored"] == 1
        assert stats["gas_sponsored"] == 1234


class TestPaymasterDeposits:
    def test_deposit_and_withdraw(self, paymaster, sponsor_owner, stranger):
        paymaster.deposit(1_000)
        assert paymaster.get_deposit() == 1_000
        assert paymaster.withdraw_to(sponsor_owner.address, stranger.address, 400)
        assert paymaster.get_deposit() == 600
        with pytest.raises(InsufficientDepositError):
            paymaster.withdraw_to(sponsor_owner.address, stranger.address, 601)

    def test_detached_paymaster_has_no_deposit(self, legacy_paymaster):
        with pytest.raises(InsufficientDepositError):
            legacy_paymaster.deposit(1)

    def test_stake_lifecycle(self, paymaster, sponsor_owner, entry_point):
        paymaster.add_stake(sponsor_owner.address, 500, 100)
        assert entry_point.get_deposit_info(paymaster.address).staked
        paymaster.unlock_stake(sponsor_owner.address, now=NOW)
        assert paymaster.withdraw_stake(sponsor_owner.address, sponsor_owner.address, now=NOW + 100) == 500
        assert entry_point.get_deposit_info(paymaster.address).stake == 0
