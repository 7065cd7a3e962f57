"""
Analytics response schemas.
"""

from typing import TYPE_CHECKING, Dict, List

from pydantic import Field

from .common import SchemaModel
from .settlements import SettlementRecord

if TYPE_CHECKING:
    from streamtip.services.analytics import StreamerAnalytics


class DistributionEntry(SchemaModel):
    count: int = 0
    volume: int = 0


class AnalyticsResponse(SchemaModel):
    streamer_address: str
    timeframe: str
    total_tips: int = 0
    total_volume: int = 0
    average_tip: int = 0
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_settlement_time_ms: int = 0
    chain_distribution: Dict[int, DistributionEntry] = Field(default_factory=dict)
    token_distribution: Dict[str, DistributionEntry] = Field(default_factory=dict)
    daily_volume: Dict[str, int] = Field(default_factory=dict)
    recent_activity: List[SettlementRecord] = Field(default_factory=list)

    @classmethod
    def from_analytics(cls, analytics: "StreamerAnalytics") -> "AnalyticsResponse":
        return cls(
            streamer_address=analytics.streamer_address,
            timeframe=analytics.timeframe,
            total_tips=analytics.total_tips,
            total_volume=analytics.total_volume,
            average_tip=analytics.average_tip,
            success_rate=analytics.success_rate,
            average_settlement_time_ms=analytics.average_settlement_time_ms,
            chain_distribution={
                chain: DistributionEntry(count=b.count, volume=b.volume)
                for chain, b in analytics.chain_distribution.items()
            },
            token_distribution={
                token: DistributionEntry(count=b.count, volume=b.volume)
                for token, b in analytics.token_distribution.items()
            },
            daily_volume=dict(analytics.daily_volume),
            recent_activity=[SettlementRecord.from_settlement(s) for s in analytics.recent_activity],
        )
