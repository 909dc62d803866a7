from concurrent.futures import ThreadPoolExecutor

import pytest

from accountkit.core.contracts.replay_protection import (
    MAX_NONCE,
    ReplayState,
    nonce_key,
    nonce_sequence,
    pack_nonce,
)


class TestNoncePacking:
    def test_pack_and_split(self):
        nonce = pack_nonce(5, 9)
        assert nonce == (5 << 64) | 9
        assert nonce_key(nonce) == 5
        assert nonce_sequence(nonce) == 9

    @pytest.mark.parametrize("key, sequence", [(0, 2**64), (2**192, 0), (-1, 0), (0, -1)])
    def test_bounds(self, key, sequence):
        with pytest.raises(ValueError):
            pack_nonce(key, sequence)


class TestReplayState:
    def test_consumed_once(self):
        state = ReplayState()
        assert not state.is_consumed(1)
        assert state.check_and_consume(1) is True
        assert state.is_consumed(1)
        assert state.check_and_consume(1) is False

    def test_out_of_order(self):
        state = ReplayState()
        assert state.check_and_consume(7)
        assert state.check_and_consume(3)
        assert state.next_nonce() == 8
        assert state.consumed_count() == 2

    def test_keys_are_independent(self):
        state = ReplayState()
        assert state.check_and_consume(pack_nonce(1, 0))
        assert state.check_and_consume(pack_nonce(2, 0))
        assert not state.is_consumed(pack_nonce(3, 0))
        assert state.next_nonce(1) == pack_nonce(1, 1)
        assert state.next_nonce(9) == pack_nonce(9, 0)
        assert state.consumed_count(1) == 1

    def test_out_of_range_rejected(self):
        state = ReplayState()
        assert state.check_and_consume(MAX_NONCE + 1) is False
        assert state.check_and_consume(-1) is False
        assert state.consumed_count() == 0

    def test_concurrent_consumers_single_winner(self):
        state = ReplayState()
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: state.check_and_consume(42), range(64)))
        assert results.count(True) == 1
        assert state.consumed_count() == 1
