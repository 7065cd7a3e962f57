"""
Test the settlement ledger: grouping, replay protection, close and status updates.
"""

import asyncio

import pytest

from streamtip.core.exceptions import (
    DuplicateTipError,
    IllegalTransitionError,
    SettlementNotFoundError,
    ValidationError,
)
from streamtip.models import GroupKey, PendingTotal, SettlementStatus
from streamtip.services.ledger import KeyedLocks

from .conftest import OTHER_STREAMER, OTHER_TOKEN, STREAMER, TOKEN


@pytest.mark.asyncio
async def test_record_tip_groups_by_key(ledger, make_tip):
    """Test that tips with the same key share one open settlement."""
    first = await ledger.record_tip(make_tip(1, 100))
    second = await ledger.record_tip(make_tip(2, 200))
    other_chain = await ledger.record_tip(make_tip(3, 50, chain_id=137))

    assert first == second
    assert other_chain != first

    settlement = await ledger.get_settlement(first)
    assert settlement.status == SettlementStatus.PENDING
    assert settlement.total_amount == 300
    assert settlement.tip_count == 2

    tip = await ledger.get_tip(1, make_tip(1, 100).transaction_hash)
    assert tip.settlement_id == first


@pytest.mark.asyncio
async def test_duplicate_tip_reports_existing_settlement(ledger, make_tip):
    """Test that a replayed hash is rejected without changing totals."""
    settlement_id = await ledger.record_tip(make_tip(1, 100))

    with pytest.raises(DuplicateTipError) as exc_info:
        await ledger.record_tip(make_tip(1, 100))

    assert exc_info.value.settlement_id == settlement_id
    assert exc_info.value.code == "DUPLICATE_TIP"
    settlement = await ledger.get_settlement(settlement_id)
    assert settlement.total_amount == 100
    assert settlement.tip_count == 1


@pytest.mark.asyncio
async def test_same_hash_on_other_chain_is_distinct(ledger, make_tip):
    """Test that replay protection is scoped to the source chain."""
    await ledger.record_tip(make_tip(1, 100, chain_id=1))
    await ledger.record_tip(make_tip(1, 100, chain_id=8453))

    assert await ledger.get_tip(8453, make_tip(1, 1).transaction_hash) is not None


@pytest.mark.asyncio
async def test_append_rejects_mismatched_key_and_non_positive_amount(ledger, make_tip):
    tip = make_tip(1, 100)
    with pytest.raises(ValidationError):
        await ledger.append_to_open_settlement(GroupKey(STREAMER, 137, TOKEN), tip)

    with pytest.raises(ValidationError):
        await ledger.record_tip(make_tip(2, 0))


@pytest.mark.asyncio
async def test_close_settlement_is_compare_and_swap(ledger, make_tip):
    """Test that only one close of the same open group succeeds."""
    settlement_id = await ledger.record_tip(make_tip(1, 100))

    closed = await ledger.close_settlement(settlement_id)
    assert closed.status == SettlementStatus.BATCHING
    assert closed.closed_at is not None

    with pytest.raises(IllegalTransitionError):
        await ledger.close_settlement(settlement_id)

    assert await ledger.get_open_group(closed.key) is None


@pytest.mark.asyncio
async def test_next_tip_after_close_opens_new_settlement(ledger, make_tip):
    """Test that membership is frozen once a settlement is closed."""
    first = await ledger.record_tip(make_tip(1, 100))
    await ledger.close_settlement(first)

    second = await ledger.record_tip(make_tip(2, 40))

    assert second != first
    assert (await ledger.get_settlement(first)).tip_count == 1
    assert (await ledger.get_settlement(second)).total_amount == 40


@pytest.mark.asyncio
async def test_update_status_enforces_state_machine(ledger, make_tip):
    settlement_id = await ledger.record_tip(make_tip(1, 100))

    with pytest.raises(IllegalTransitionError):
        await ledger.update_status(settlement_id, SettlementStatus.CONVERTING)

    with pytest.raises(IllegalTransitionError):
        await ledger.update_status(settlement_id, SettlementStatus.BATCHING)

    await ledger.close_settlement(settlement_id)
    converting = await ledger.update_status(settlement_id, SettlementStatus.CONVERTING)
    assert converting.attempt == 1
    assert converting.idempotency_key == f"{settlement_id}:1"

    with pytest.raises(IllegalTransitionError):
        await ledger.update_status(settlement_id, SettlementStatus.COMPLETED)


@pytest.mark.asyncio
async def test_failed_records_detail_and_retry_starts_new_attempt(ledger, make_tip):
    settlement_id = await ledger.record_tip(make_tip(1, 100))
    await ledger.close_settlement(settlement_id)
    await ledger.update_status(settlement_id, SettlementStatus.CONVERTING)

    failed = await ledger.update_status(settlement_id, SettlementStatus.FAILED, "swap rejected")
    assert failed.error == "swap rejected"

    retry = await ledger.update_status(settlement_id, SettlementStatus.CONVERTING)
    assert retry.attempt == 2
    assert retry.error is None


@pytest.mark.asyncio
async def test_completed_requires_exact_split(ledger, make_tip):
    settlement_id = await ledger.record_tip(make_tip(1, 100))
    await ledger.close_settlement(settlement_id)
    await ledger.update_status(settlement_id, SettlementStatus.CONVERTING)
    await ledger.update_status(settlement_id, SettlementStatus.BRIDGING, converted_amount=200)

    with pytest.raises(ValidationError):
        await ledger.update_status(
            settlement_id,
            SettlementStatus.COMPLETED,
            platform_fee=10,
            business_share=133,
            streamer_share=50,
        )

    completed = await ledger.update_status(
        settlement_id,
        SettlementStatus.COMPLETED,
        destination_tx_hash="0xfeed",
        platform_fee=10,
        business_share=133,
        streamer_share=57,
    )
    assert completed.status == SettlementStatus.COMPLETED
    assert completed.split.total == 200


@pytest.mark.asyncio
async def test_update_status_rejects_unknown_fields(ledger, make_tip):
    settlement_id = await ledger.record_tip(make_tip(1, 100))
    await ledger.close_settlement(settlement_id)

    with pytest.raises(ValidationError):
        await ledger.update_status(settlement_id, SettlementStatus.CONVERTING, total_amount=5)


@pytest.mark.asyncio
async def test_unknown_settlement(ledger):
    with pytest.raises(SettlementNotFoundError):
        await ledger.get_settlement("stl_missing")


@pytest.mark.asyncio
async def test_snapshots_are_detached(ledger, make_tip):
    """Test that readers never see later appends through an old snapshot."""
    settlement_id = await ledger.record_tip(make_tip(1, 100))
    snapshot = await ledger.get_settlement(settlement_id)

    await ledger.record_tip(make_tip(2, 100))

    assert snapshot.tip_count == 1
    assert (await ledger.get_settlement(settlement_id)).tip_count == 2


@pytest.mark.asyncio
async def test_pending_totals_shape(ledger, make_tip):
    await ledger.record_tip(make_tip(1, 100))
    await ledger.record_tip(make_tip(2, 200))
    await ledger.record_tip(make_tip(3, 7, token=OTHER_TOKEN))
    await ledger.record_tip(make_tip(4, 9, chain_id=137))
    await ledger.record_tip(make_tip(5, 11, streamer=OTHER_STREAMER))

    totals = await ledger.pending_totals(STREAMER)

    assert totals == {
        1: {TOKEN: PendingTotal(300, 2), OTHER_TOKEN: PendingTotal(7, 1)},
        137: {TOKEN: PendingTotal(9, 1)},
    }


@pytest.mark.asyncio
async def test_list_by_streamer_newest_first(ledger, make_tip, clock):
    ids = []
    for n in range(3):
        settlement_id = await ledger.record_tip(make_tip(n + 1, 10))
        await ledger.close_settlement(settlement_id)
        ids.append(settlement_id)
        clock.advance(minutes=1)

    listed = await ledger.list_by_streamer(STREAMER)
    assert [s.settlement_id for s in listed] == list(reversed(ids))

    limited = await ledger.list_by_streamer(STREAMER, limit=2)
    assert [s.settlement_id for s in limited] == [ids[2], ids[1]]

    assert await ledger.list_by_streamer(STREAMER, status=SettlementStatus.PENDING) == []


@pytest.mark.asyncio
async def test_recompute_total_matches_running_total(ledger, make_tip):
    settlement_id = None
    for n, amount in enumerate([3, 10**24, 17, 999], start=1):
        settlement_id = await ledger.record_tip(make_tip(n, amount))

    settlement = await ledger.get_settlement(settlement_id)
    assert await ledger.recompute_total(settlement_id) == settlement.total_amount


@pytest.mark.asyncio
async def test_keyed_locks_serialize_and_clean_up():
    """Test that holders of one key are serialized and the table empties."""
    locks = KeyedLocks()
    order = []

    async def worker(name):
        async with locks.hold("k"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0
    assert not locks.locked("k")
