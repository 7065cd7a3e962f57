"""
Batch aggregator - groups incoming tips into open batches and decides when a
batch closes.

Close policy per (streamer, chain, token) key:
- accumulated amount reaches the token's minimum settlement threshold
- the oldest member tip has waited longer than the batching window
- an explicit manual settle request covering the key

Append, close decision and close run under the key lock; dispatch to the
orchestrator happens after the lock is released so ingestion for a key never
waits on that key's previous batch.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

import structlog

from streamtip.core.config import Settings, settings as default_settings
from streamtip.core.exceptions import ValidationError
from streamtip.core.timeutils import Clock, utc_now
from streamtip.models import GroupKey, PendingGroup, Settlement, SettlementStatus, Tip
from .ledger import Ledger


logger = structlog.get_logger(__name__)

Dispatcher = Callable[[str], object]

CLOSE_THRESHOLD = "threshold"
CLOSE_WINDOW = "window"
CLOSE_MANUAL = "manual"


@dataclass
class QueuedTip:
    """Result of queueing a tip."""
    settlement_id: str
    status: SettlementStatus
    closed: bool = False
    close_reason: Optional[str] = None


class BatchAggregator:
    """Routes tips into open groups and closes them according to policy."""

    def __init__(
        self,
        ledger: Ledger,
        settings: Optional[Settings] = None,
        dispatcher: Optional[Dispatcher] = None,
        clock: Optional[Clock] = None,
    ):
        self.logger = logger.bind(service="batch_aggregator")
        self.ledger = ledger
        self.settings = settings or default_settings
        self.dispatcher = dispatcher
        self._clock = clock or utc_now

    def close_reason(self, group: PendingGroup) -> Optional[str]:
        """Return why ``group`` should close now, or None to keep accumulating."""
        if group.amount >= self.settings.threshold_for(group.key.token_address):
            return CLOSE_THRESHOLD
        window = timedelta(seconds=self.settings.max_batch_window_seconds)
        if self._clock() - group.opened_at >= window:
            return CLOSE_WINDOW
        return None

    async def queue_tip(self, tip: Tip) -> QueuedTip:
        """
        Record ``tip``, evaluate the close policy and dispatch if it closed.

        Raises:
            DuplicateTipError: tip hash already recorded for its chain
        """
        closed: Optional[Settlement] = None
        reason = None

        async with self.ledger.key_lock(tip.key):
            settlement_id = await self.ledger.record_tip(tip)
            group = await self.ledger.get_open_group(tip.key)
            reason = self.close_reason(group)
            if reason:
                closed = await self.ledger.close_settlement(group.settlement_id)

        self.logger.info(
            "Tip queued",
            transaction_hash=tip.transaction_hash,
            chain_id=tip.chain_id,
            settlement_id=settlement_id,
            amount=tip.amount,
            closed=closed is not None
        )

        if closed is None:
            return QueuedTip(settlement_id=settlement_id, status=SettlementStatus.PENDING)

        self._log_close(closed, reason)
        self._dispatch(closed.settlement_id)
        settlement = await self.ledger.get_settlement(settlement_id)
        return QueuedTip(
            settlement_id=settlement_id,
            status=settlement.status,
            closed=True,
            close_reason=reason,
        )

    async def close_group(
        self,
        key: GroupKey,
        expected_settlement_id: Optional[str] = None,
        reason: str = CLOSE_MANUAL,
        dispatch: bool = True,
    ) -> Optional[Settlement]:
        """
        Close the open group for ``key``.

        When ``expected_settlement_id`` is given the close only happens if
        that settlement is still the open one, so a manual and an automatic
        trigger cannot close the same group twice. Returns None when nothing
        was closed.
        """
        async with self.ledger.key_lock(key):
            group = await self.ledger.get_open_group(key)
            if group is None:
                return None
            if expected_settlement_id and group.settlement_id != expected_settlement_id:
                return None
            if reason == CLOSE_WINDOW and self.close_reason(group) is None:
                return None
            closed = await self.ledger.close_settlement(group.settlement_id)

        self._log_close(closed, reason)
        if dispatch:
            self._dispatch(closed.settlement_id)
        return closed

    async def manual_settle(
        self,
        streamer_address: str,
        chain_id: Optional[int] = None,
        token_address: Optional[str] = None,
    ) -> List[Settlement]:
        """Close every open group of the streamer matching the optional scope."""
        if token_address is not None and chain_id is None:
            raise ValidationError("token_address requires chain_id", {"token_address": token_address})

        closed = []
        for group in await self.ledger.list_open_groups(streamer_address):
            if chain_id is not None and group.key.chain_id != chain_id:
                continue
            if token_address is not None and group.key.token_address != token_address:
                continue
            settlement = await self.close_group(
                group.key,
                expected_settlement_id=group.settlement_id,
                reason=CLOSE_MANUAL,
                dispatch=False,
            )
            if settlement is not None:
                closed.append(settlement)

        self.logger.info(
            "Manual settle",
            streamer_address=streamer_address,
            chain_id=chain_id,
            token_address=token_address,
            closed=len(closed)
        )
        return closed

    async def sweep_expired(self, dispatch: bool = True) -> List[Settlement]:
        """Close every open group whose oldest tip is past the batching window."""
        closed = []
        for group in await self.ledger.list_open_groups():
            if self.close_reason(group) != CLOSE_WINDOW:
                continue
            settlement = await self.close_group(
                group.key,
                expected_settlement_id=group.settlement_id,
                reason=CLOSE_WINDOW,
                dispatch=dispatch,
            )
            if settlement is not None:
                closed.append(settlement)
        return closed

    def _dispatch(self, settlement_id: str) -> None:
        if self.dispatcher is not None:
            self.dispatcher(settlement_id)

    def _log_close(self, settlement: Settlement, reason: Optional[str]) -> None:
        self.logger.info(
            "Batch closed",
            settlement_id=settlement.settlement_id,
            reason=reason,
            total_amount=settlement.total_amount,
            tip_count=settlement.tip_count
        )
