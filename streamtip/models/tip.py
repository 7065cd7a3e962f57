"""
Tip model - one observed source-chain transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple, Optional


class GroupKey(NamedTuple):
    """Batching key: tips are grouped per (streamer, source chain, token)."""
    streamer_address: str
    chain_id: int
    token_address: str

    def __str__(self) -> str:
        return f"{self.streamer_address}:{self.chain_id}:{self.token_address}"


@dataclass
class Tip:
    """
    A confirmed tip transaction.

    Immutable once recorded except for ``settlement_id``, which the ledger
    stamps when the tip is grouped into a batch. ``amount`` is always an
    integer in the token's smallest unit.
    """
    transaction_hash: str
    chain_id: int
    token_address: str
    amount: int
    streamer_address: str
    received_at: datetime
    business_address: Optional[str] = None
    message: Optional[str] = None
    settlement_id: Optional[str] = None

    @property
    def key(self) -> GroupKey:
        return GroupKey(self.streamer_address, self.chain_id, self.token_address)

    @property
    def natural_key(self) -> tuple:
        """Replay-protection key: a hash is unique within its source chain."""
        return (self.chain_id, self.transaction_hash)
