"""
Settlement (batch) and pending-group models.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .tip import GroupKey


class SettlementStatus(str, Enum):
    """Settlement lifecycle status."""
    PENDING = "pending"
    BATCHING = "batching"
    CONVERTING = "converting"
    BRIDGING = "bridging"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward-only moves; FAILED -> CONVERTING is the explicit retry path.
ALLOWED_TRANSITIONS: Dict[SettlementStatus, FrozenSet[SettlementStatus]] = {
    SettlementStatus.PENDING: frozenset({SettlementStatus.BATCHING}),
    SettlementStatus.BATCHING: frozenset({SettlementStatus.CONVERTING}),
    SettlementStatus.CONVERTING: frozenset({SettlementStatus.BRIDGING, SettlementStatus.FAILED}),
    SettlementStatus.BRIDGING: frozenset({SettlementStatus.COMPLETED, SettlementStatus.FAILED}),
    SettlementStatus.COMPLETED: frozenset(),
    SettlementStatus.FAILED: frozenset({SettlementStatus.CONVERTING}),
}

ACTIVE_STATUSES = frozenset({SettlementStatus.CONVERTING, SettlementStatus.BRIDGING})
CLOSED_STATUSES = frozenset(set(SettlementStatus) - {SettlementStatus.PENDING})


def can_transition(current: SettlementStatus, requested: SettlementStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class RevenueSplit:
    """Three-way division of a converted amount (destination smallest units)."""
    platform_fee: int
    business_share: int
    streamer_share: int

    @property
    def total(self) -> int:
        return self.platform_fee + self.business_share + self.streamer_share

    @classmethod
    def compute(
        cls,
        converted_amount: int,
        platform_fee_bps: int,
        business_share_bps: int,
    ) -> "RevenueSplit":
        """
        Split ``converted_amount`` exactly.

        The platform fee is taken first, the business share is a percentage of
        the post-fee remainder and the streamer receives whatever is left, so
        integer rounding never leaks value.
        """
        if converted_amount < 0:
            raise ValueError("converted_amount must not be negative")
        platform_fee = converted_amount * platform_fee_bps // 10_000
        remainder = converted_amount - platform_fee
        business_share = remainder * business_share_bps // 10_000
        streamer_share = remainder - business_share
        return cls(platform_fee, business_share, streamer_share)


@dataclass
class Settlement:
    """
    A batch of tips for one (streamer, chain, token) key.

    ``tip_hashes`` grows while the batch is ``pending`` and is frozen once the
    ledger closes it.
    """
    settlement_id: str
    streamer_address: str
    chain_id: int
    token_address: str
    created_at: datetime
    updated_at: datetime
    business_address: Optional[str] = None
    total_amount: int = 0
    tip_hashes: List[str] = field(default_factory=list)
    status: SettlementStatus = SettlementStatus.PENDING
    first_tip_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    attempt: int = 0
    converted_amount: Optional[int] = None
    destination_tx_hash: Optional[str] = None
    error: Optional[str] = None
    platform_fee: Optional[int] = None
    business_share: Optional[int] = None
    streamer_share: Optional[int] = None

    @property
    def key(self) -> GroupKey:
        return GroupKey(self.streamer_address, self.chain_id, self.token_address)

    @property
    def tip_count(self) -> int:
        return len(self.tip_hashes)

    @property
    def is_open(self) -> bool:
        return self.status == SettlementStatus.PENDING

    @property
    def idempotency_key(self) -> str:
        """Token handed to external providers for the current attempt."""
        return f"{self.settlement_id}:{self.attempt}"

    @property
    def split(self) -> Optional[RevenueSplit]:
        if self.platform_fee is None:
            return None
        return RevenueSplit(self.platform_fee, self.business_share, self.streamer_share)

    def snapshot(self) -> "Settlement":
        """Detached copy safe to hand to readers while the ledger keeps mutating."""
        return replace(self, tip_hashes=list(self.tip_hashes))


@dataclass(frozen=True)
class PendingTotal:
    """Accumulated amount and count of an open group."""
    amount: int = 0
    count: int = 0


@dataclass
class PendingGroup:
    """
    Open aggregate for a key. At most one exists per key; closing detaches it
    and the next tip for the key opens a fresh one.
    """
    key: GroupKey
    settlement_id: str
    opened_at: datetime
    amount: int = 0
    count: int = 0
    tip_hashes: List[str] = field(default_factory=list)

    @property
    def totals(self) -> PendingTotal:
        return PendingTotal(amount=self.amount, count=self.count)

    def snapshot(self) -> "PendingGroup":
        return replace(self, tip_hashes=list(self.tip_hashes))


# chain id -> token address -> totals
PendingTotals = Dict[int, Dict[str, PendingTotal]]

