"""
Test settlement models: state machine and revenue split.
"""

import pytest

from streamtip.models import (
    ALLOWED_TRANSITIONS,
    GroupKey,
    RevenueSplit,
    SettlementStatus,
    can_transition,
)


def test_forward_transitions_allowed():
    """Test the permitted lifecycle moves."""
    assert can_transition(SettlementStatus.PENDING, SettlementStatus.BATCHING)
    assert can_transition(SettlementStatus.BATCHING, SettlementStatus.CONVERTING)
    assert can_transition(SettlementStatus.CONVERTING, SettlementStatus.BRIDGING)
    assert can_transition(SettlementStatus.BRIDGING, SettlementStatus.COMPLETED)
    assert can_transition(SettlementStatus.CONVERTING, SettlementStatus.FAILED)
    assert can_transition(SettlementStatus.BRIDGING, SettlementStatus.FAILED)
    assert can_transition(SettlementStatus.FAILED, SettlementStatus.CONVERTING)


def test_backward_and_terminal_transitions_rejected():
    """Test that completed is terminal and nothing moves backward."""
    assert ALLOWED_TRANSITIONS[SettlementStatus.COMPLETED] == frozenset()
    assert not can_transition(SettlementStatus.BATCHING, SettlementStatus.PENDING)
    assert not can_transition(SettlementStatus.BRIDGING, SettlementStatus.CONVERTING)
    assert not can_transition(SettlementStatus.PENDING, SettlementStatus.CONVERTING)
    assert not can_transition(SettlementStatus.FAILED, SettlementStatus.BATCHING)


@pytest.mark.parametrize("amount", [0, 1, 7, 19, 20, 99, 1000, 1_000_003, 10**30 + 17])
def test_split_sums_exactly(amount):
    """Test that the three shares always add up to the converted amount."""
    split = RevenueSplit.compute(amount, 500, 7000)
    assert split.total == amount
    assert split.platform_fee >= 0
    assert split.business_share >= 0
    assert split.streamer_share >= 0


def test_split_proportions():
    """Test 5% fee then 70/30 of the remainder."""
    split = RevenueSplit.compute(10_000, 500, 7000)
    assert split.platform_fee == 500
    assert split.business_share == 6650
    assert split.streamer_share == 2850


def test_split_rounding_goes_to_streamer():
    """Test that the rounding remainder ends up with the streamer share."""
    split = RevenueSplit.compute(101, 500, 7000)
    assert split.platform_fee == 5
    assert split.business_share == 67
    assert split.streamer_share == 29


def test_split_rejects_negative():
    with pytest.raises(ValueError):
        RevenueSplit.compute(-1, 500, 7000)


def test_group_key_str():
    key = GroupKey("0xab", 137, "0xcd")
    assert str(key) == "0xab:137:0xcd"
