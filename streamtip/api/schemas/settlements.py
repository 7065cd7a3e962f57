"""
Settlement request and response schemas.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field, RootModel, field_validator, model_validator

from streamtip.models import PendingGroup, Settlement, SettlementStatus
from .common import SchemaModel


_HEX_RE = re.compile(r"^0x[0-9a-fA-F]+$")


def _normalize_hex(value: Any, field_name: str) -> Any:
    if not isinstance(value, str):
        return value
    value = value.strip()
    if not _HEX_RE.match(value):
        raise ValueError(f"{field_name} must be a 0x-prefixed hex string")
    return value.lower()


def parse_raw_amount(value: Any) -> int:
    """
    Accept a raw token amount as int or decimal-digit string.

    Floats are rejected outright; raw amounts are integers of arbitrary size.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("amount must be an integer in the token's smallest unit")
    if isinstance(value, str):
        value = value.strip()
        if not (value.isascii() and value.isdigit()):
            raise ValueError("amount must contain only ASCII digits")
        value = int(value)
    if not isinstance(value, int):
        raise ValueError("amount must be an integer in the token's smallest unit")
    if value <= 0:
        raise ValueError("amount must be positive")
    return value


class QueueTipRequest(SchemaModel):
    """Confirmed source-chain tip delivered by the transaction observer."""
    transaction_hash: str = Field(min_length=3)
    chain_id: int = Field(gt=0)
    token_address: str = Field(min_length=3)
    amount: int
    streamer_address: str = Field(min_length=3)
    business_address: Optional[str] = None
    message: Optional[str] = None

    @field_validator("transaction_hash", "token_address", "streamer_address", "business_address", mode="before")
    @classmethod
    def normalize_hex_fields(cls, v: Any, info) -> Any:
        if v is None or v == "":
            return None if info.field_name == "business_address" else v
        return _normalize_hex(v, info.field_name)

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> int:
        return parse_raw_amount(v)

    @field_validator("message")
    @classmethod
    def strip_message(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class QueueTipResponse(SchemaModel):
    settlement_id: str
    status: SettlementStatus
    estimated_time: str


class ManualSettleRequest(SchemaModel):
    streamer_address: str = Field(min_length=3)
    chain_id: Optional[int] = Field(default=None, gt=0)
    token_address: Optional[str] = None

    @field_validator("streamer_address", "token_address", mode="before")
    @classmethod
    def normalize_hex_fields(cls, v: Any, info) -> Any:
        if v is None:
            return None
        return _normalize_hex(v, info.field_name)

    @model_validator(mode="after")
    def token_requires_chain(self) -> "ManualSettleRequest":
        if self.token_address is not None and self.chain_id is None:
            raise ValueError("token_address requires chain_id")
        return self


class ManualSettleResponse(SchemaModel):
    triggered_batch_ids: List[str] = Field(default_factory=list)
    results: List["ProcessBatchResponse"] = Field(default_factory=list)


class ProcessBatchResponse(SchemaModel):
    batch_id: str
    status: SettlementStatus
    destination_tx_hash: Optional[str] = None
    error: Optional[str] = None
    converted_amount: Optional[int] = None

    @classmethod
    def from_settlement(cls, settlement: Settlement) -> "ProcessBatchResponse":
        return cls(
            batch_id=settlement.settlement_id,
            status=settlement.status,
            destination_tx_hash=settlement.destination_tx_hash,
            error=settlement.error,
            converted_amount=settlement.converted_amount,
        )


class SettlementStatusResponse(SchemaModel):
    settlement_id: str
    status: SettlementStatus
    destination_tx_hash: Optional[str] = None
    error: Optional[str] = None


class PendingBatch(SchemaModel):
    batch_id: str
    streamer: str
    chain: int
    token: str
    amount: int
    count: int
    status: SettlementStatus
    opened_at: Optional[datetime] = None

    @classmethod
    def from_group(cls, group: PendingGroup) -> "PendingBatch":
        return cls(
            batch_id=group.settlement_id,
            streamer=group.key.streamer_address,
            chain=group.key.chain_id,
            token=group.key.token_address,
            amount=group.amount,
            count=group.count,
            status=SettlementStatus.PENDING,
            opened_at=group.opened_at,
        )

    @classmethod
    def from_settlement(cls, settlement: Settlement) -> "PendingBatch":
        return cls(
            batch_id=settlement.settlement_id,
            streamer=settlement.streamer_address,
            chain=settlement.chain_id,
            token=settlement.token_address,
            amount=settlement.total_amount,
            count=settlement.tip_count,
            status=settlement.status,
            opened_at=settlement.first_tip_at,
        )


class BridgeStatusResponse(SchemaModel):
    healthy: bool
    in_flight_count: int
    last_error: Optional[str] = None
    consecutive_failures: int = 0


class SettlementRecord(SchemaModel):
    """Full settlement view returned by list and analytics queries."""
    settlement_id: str
    streamer_address: str
    business_address: Optional[str] = None
    chain_id: int
    token_address: str
    total_amount: int
    tip_count: int
    tip_hashes: List[str]
    status: SettlementStatus
    attempt: int = 0
    converted_amount: Optional[int] = None
    destination_tx_hash: Optional[str] = None
    error: Optional[str] = None
    platform_fee: Optional[int] = None
    business_share: Optional[int] = None
    streamer_share: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None

    @classmethod
    def from_settlement(cls, settlement: Settlement) -> "SettlementRecord":
        return cls(
            settlement_id=settlement.settlement_id,
            streamer_address=settlement.streamer_address,
            business_address=settlement.business_address,
            chain_id=settlement.chain_id,
            token_address=settlement.token_address,
            total_amount=settlement.total_amount,
            tip_count=settlement.tip_count,
            tip_hashes=list(settlement.tip_hashes),
            status=settlement.status,
            attempt=settlement.attempt,
            converted_amount=settlement.converted_amount,
            destination_tx_hash=settlement.destination_tx_hash,
            error=settlement.error,
            platform_fee=settlement.platform_fee,
            business_share=settlement.business_share,
            streamer_share=settlement.streamer_share,
            created_at=settlement.created_at,
            updated_at=settlement.updated_at,
            closed_at=settlement.closed_at,
        )


class PendingTotalEntry(SchemaModel):
    amount: int = 0
    count: int = 0


class PendingTotalsResponse(RootModel[Dict[int, Dict[str, PendingTotalEntry]]]):
    """chain id -> token address -> {amount, count} for open groups."""

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def entry(self, chain_id: int, token_address: str) -> Optional[PendingTotalEntry]:
        return self.root.get(chain_id, {}).get(token_address)


ManualSettleResponse.model_rebuild()
