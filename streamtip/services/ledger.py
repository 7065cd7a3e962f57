"""
Settlement ledger - the store of tips, open groups and settlements.

This service provides:
- Replay protection on (source chain, transaction hash)
- Create-or-reuse of the open settlement per (streamer, chain, token)
- Compare-and-swap close of an open group
- State-machine checked status updates
- Snapshot reads that never take a writer lock

All coroutines complete without suspending, so each call is atomic with
respect to other tasks on the event loop. Compound operations that span
several calls (append, evaluate, close) must hold ``key_lock`` for the key.
"""

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

import structlog

from streamtip.core.exceptions import (
    DuplicateTipError,
    IllegalTransitionError,
    SettlementNotFoundError,
    ValidationError,
)
from streamtip.core.timeutils import Clock, utc_now
from streamtip.models import (
    GroupKey,
    PendingGroup,
    PendingTotal,
    PendingTotals,
    Settlement,
    SettlementStatus,
    Tip,
    can_transition,
)


logger = structlog.get_logger(__name__)

# Fields the orchestrator may set alongside a status change
_MUTABLE_FIELDS = frozenset({
    "converted_amount",
    "destination_tx_hash",
    "platform_fee",
    "business_share",
    "streamer_share",
})


def new_settlement_id() -> str:
    return f"stl_{uuid.uuid4().hex}"


class KeyedLocks:
    """
    Lock table with one ``asyncio.Lock`` per key.

    Locks are created on first use and dropped when the last holder or waiter
    leaves, so the table only contains keys with activity in progress.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._refs: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class Ledger:
    """In-process settlement ledger."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.logger = logger.bind(service="ledger")
        self._clock = clock or utc_now
        self._new_id = id_factory or new_settlement_id

        self._tips: Dict[Tuple[int, str], Tip] = {}
        self._settlements: Dict[str, Settlement] = {}
        self._open_groups: Dict[GroupKey, PendingGroup] = {}
        self._by_streamer: Dict[str, List[str]] = defaultdict(list)

        self._locks = KeyedLocks()

    def key_lock(self, key: GroupKey):
        """Serialize compound mutations for one (streamer, chain, token) key."""
        return self._locks.hold(key)

    # Writes

    async def record_tip(self, tip: Tip) -> str:
        """
        Record a tip and group it into the open settlement for its key.

        Raises:
            DuplicateTipError: the hash was already recorded on that chain
        """
        return await self.append_to_open_settlement(tip.key, tip)

    async def append_to_open_settlement(self, key: GroupKey, tip: Tip) -> str:
        """Create-or-reuse the open settlement for ``key`` and add ``tip`` to it."""
        if tip.key != key:
            raise ValidationError(
                "Tip does not belong to the requested group",
                {"tip_key": str(tip.key), "key": str(key)}
            )
        if tip.amount <= 0:
            raise ValidationError("Tip amount must be positive", {"amount": tip.amount})

        existing = self._tips.get(tip.natural_key)
        if existing is not None:
            self.logger.info(
                "Duplicate tip rejected",
                transaction_hash=tip.transaction_hash,
                chain_id=tip.chain_id,
                settlement_id=existing.settlement_id
            )
            raise DuplicateTipError(tip.transaction_hash, tip.chain_id, existing.settlement_id)

        now = self._clock()
        group = self._open_groups.get(key)
        if group is None:
            settlement = Settlement(
                settlement_id=self._new_id(),
                streamer_address=key.streamer_address,
                chain_id=key.chain_id,
                token_address=key.token_address,
                business_address=tip.business_address,
                created_at=now,
                updated_at=now,
                first_tip_at=tip.received_at,
            )
            group = PendingGroup(key=key, settlement_id=settlement.settlement_id, opened_at=tip.received_at)
            self._settlements[settlement.settlement_id] = settlement
            self._open_groups[key] = group
            self._by_streamer[key.streamer_address].append(settlement.settlement_id)
            self.logger.debug("Opened settlement", settlement_id=settlement.settlement_id, key=str(key))
        else:
            settlement = self._settlements[group.settlement_id]

        tip.settlement_id = settlement.settlement_id
        self._tips[tip.natural_key] = tip

        settlement.tip_hashes.append(tip.transaction_hash)
        settlement.total_amount += tip.amount
        settlement.updated_at = now
        if settlement.business_address is None and tip.business_address:
            settlement.business_address = tip.business_address

        group.tip_hashes.append(tip.transaction_hash)
        group.amount += tip.amount
        group.count += 1

        return settlement.settlement_id

    async def close_settlement(self, settlement_id: str) -> Settlement:
        """
        Freeze membership and move the settlement to ``batching``.

        Only succeeds while the settlement is still the open group for its
        key, so two closers racing on the same group cannot both win.
        """
        settlement = self._get(settlement_id)
        group = self._open_groups.get(settlement.key)
        if (
            settlement.status != SettlementStatus.PENDING
            or group is None
            or group.settlement_id != settlement_id
        ):
            raise IllegalTransitionError(
                settlement_id,
                settlement.status.value,
                SettlementStatus.BATCHING.value,
                "settlement is not the open group for its key"
            )

        del self._open_groups[settlement.key]
        now = self._clock()
        settlement.status = SettlementStatus.BATCHING
        settlement.closed_at = now
        settlement.updated_at = now

        self.logger.info(
            "Settlement closed",
            settlement_id=settlement_id,
            key=str(settlement.key),
            total_amount=settlement.total_amount,
            tip_count=settlement.tip_count
        )
        return settlement.snapshot()

    async def update_status(
        self,
        settlement_id: str,
        new_status: SettlementStatus,
        detail: Optional[str] = None,
        **fields,
    ) -> Settlement:
        """
        Apply a legal state-machine move.

        Entering ``converting`` starts a new attempt; entering ``failed``
        stores ``detail`` as the error.

        Raises:
            IllegalTransitionError: move not permitted from the current status
        """
        settlement = self._get(settlement_id)
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValidationError("Unknown settlement fields", {"fields": sorted(unknown)})

        if new_status == SettlementStatus.BATCHING:
            # Closing goes through close_settlement so the open group is detached too
            raise IllegalTransitionError(
                settlement_id, settlement.status.value, new_status.value, "use close_settlement"
            )
        if not can_transition(settlement.status, new_status):
            raise IllegalTransitionError(settlement_id, settlement.status.value, new_status.value)

        if new_status == SettlementStatus.CONVERTING:
            settlement.attempt += 1
            settlement.error = None
            settlement.converted_amount = None
            settlement.destination_tx_hash = None
        elif new_status == SettlementStatus.FAILED:
            settlement.error = detail or "unknown error"
        elif new_status == SettlementStatus.COMPLETED:
            self._check_split(settlement, fields)

        for name, value in fields.items():
            setattr(settlement, name, value)

        previous = settlement.status
        settlement.status = new_status
        settlement.updated_at = self._clock()

        self.logger.info(
            "Settlement status changed",
            settlement_id=settlement_id,
            previous=previous.value,
            status=new_status.value,
            attempt=settlement.attempt,
            detail=detail
        )
        return settlement.snapshot()

    # Reads

    async def get_settlement(self, settlement_id: str) -> Settlement:
        return self._get(settlement_id).snapshot()

    async def get_tip(self, chain_id: int, transaction_hash: str) -> Optional[Tip]:
        return self._tips.get((chain_id, transaction_hash))

    async def get_tips(self, settlement_id: str) -> List[Tip]:
        settlement = self._get(settlement_id)
        return [self._tips[(settlement.chain_id, h)] for h in settlement.tip_hashes]

    async def recompute_total(self, settlement_id: str) -> int:
        """Exact sum of member tip amounts, independent of the running total."""
        return sum(tip.amount for tip in await self.get_tips(settlement_id))

    async def list_by_streamer(
        self,
        streamer_address: str,
        status: Optional[SettlementStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Settlement]:
        """Settlements for a streamer, newest first."""
        ids = self._by_streamer.get(streamer_address, [])
        result = []
        for settlement_id in reversed(ids):
            settlement = self._settlements[settlement_id]
            if status is not None and settlement.status != status:
                continue
            result.append(settlement.snapshot())
            if limit is not None and len(result) >= limit:
                break
        return result

    async def list_settlements(
        self,
        statuses: Optional[Iterable[SettlementStatus]] = None,
    ) -> List[Settlement]:
        wanted = set(statuses) if statuses is not None else None
        return [
            s.snapshot() for s in self._settlements.values()
            if wanted is None or s.status in wanted
        ]

    async def get_open_group(self, key: GroupKey) -> Optional[PendingGroup]:
        group = self._open_groups.get(key)
        return group.snapshot() if group else None

    async def list_open_groups(self, streamer_address: Optional[str] = None) -> List[PendingGroup]:
        return [
            group.snapshot() for key, group in self._open_groups.items()
            if streamer_address is None or key.streamer_address == streamer_address
        ]

    async def pending_totals(self, streamer_address: str) -> PendingTotals:
        totals: PendingTotals = {}
        for key, group in self._open_groups.items():
            if key.streamer_address != streamer_address:
                continue
            totals.setdefault(key.chain_id, {})[key.token_address] = PendingTotal(
                amount=group.amount, count=group.count
            )
        return totals

    def _get(self, settlement_id: str) -> Settlement:
        settlement = self._settlements.get(settlement_id)
        if settlement is None:
            raise SettlementNotFoundError(settlement_id)
        return settlement

    @staticmethod
    def _check_split(settlement: Settlement, fields: dict) -> None:
        converted = fields.get("converted_amount", settlement.converted_amount)
        parts = [fields.get(name) for name in ("platform_fee", "business_share", "streamer_share")]
        if converted is None or any(part is None for part in parts) or sum(parts) != converted:
            raise ValidationError(
                "Completed settlement needs a revenue split summing to the converted amount",
                {"settlement_id": settlement.settlement_id, "converted_amount": converted}
            )
