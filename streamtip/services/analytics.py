"""
Analytics engine - read-only metrics derived from ledger state.

Nothing here is cached or stored; every call recomputes from the settlements
the ledger holds for the streamer.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

import structlog

from streamtip.core.config import Settings, settings as default_settings
from streamtip.core.timeutils import Clock, elapsed_ms, utc_now
from streamtip.models import Settlement, SettlementStatus
from .ledger import Ledger


logger = structlog.get_logger(__name__)

DEFAULT_TIMEFRAME = "7d"

TIMEFRAMES: Dict[str, Optional[timedelta]] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}


@dataclass
class DistributionBucket:
    """Tip count and volume for one chain or token."""
    count: int = 0
    volume: int = 0


@dataclass
class StreamerAnalytics:
    """
    Aggregate metrics for a streamer over a timeframe.

    Volumes of completed settlements are in destination smallest units; the
    token distribution volume is the raw source amount of that token.
    """
    streamer_address: str
    timeframe: str
    total_tips: int = 0
    total_volume: int = 0
    average_tip: int = 0
    success_rate: float = 0.0
    average_settlement_time_ms: int = 0
    chain_distribution: Dict[int, DistributionBucket] = field(default_factory=dict)
    token_distribution: Dict[str, DistributionBucket] = field(default_factory=dict)
    daily_volume: Dict[str, int] = field(default_factory=dict)
    recent_activity: List[Settlement] = field(default_factory=list)


def normalize_timeframe(timeframe: Optional[str]) -> str:
    """Unknown or missing timeframes fall back to the default window."""
    if timeframe in TIMEFRAMES:
        return timeframe
    return DEFAULT_TIMEFRAME


class AnalyticsEngine:
    """Computes streamer analytics on demand."""

    def __init__(
        self,
        ledger: Ledger,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.logger = logger.bind(service="analytics_engine")
        self.ledger = ledger
        self.settings = settings or default_settings
        self._clock = clock or utc_now

    async def compute(self, streamer_address: str, timeframe: Optional[str] = None) -> StreamerAnalytics:
        timeframe = normalize_timeframe(timeframe)
        settlements = await self.ledger.list_by_streamer(streamer_address)

        window = TIMEFRAMES[timeframe]
        if window is not None:
            cutoff = self._clock() - window
            settlements = [s for s in settlements if s.created_at >= cutoff]

        self.logger.debug(
            "Computing analytics",
            streamer_address=streamer_address,
            timeframe=timeframe,
            settlements=len(settlements)
        )

        return self.derive(streamer_address, timeframe, settlements)

    def derive(
        self,
        streamer_address: str,
        timeframe: str,
        settlements: List[Settlement],
    ) -> StreamerAnalytics:
        """Pure derivation over a list of settlement snapshots."""
        result = StreamerAnalytics(streamer_address=streamer_address, timeframe=timeframe)

        completed = [s for s in settlements if s.status == SettlementStatus.COMPLETED]
        failed_count = sum(1 for s in settlements if s.status == SettlementStatus.FAILED)

        result.total_tips = sum(s.tip_count for s in settlements)
        result.total_volume = sum(s.converted_amount for s in completed)

        completed_tips = sum(s.tip_count for s in completed)
        if completed_tips:
            result.average_tip = result.total_volume // completed_tips

        if completed or failed_count:
            result.success_rate = len(completed) / (len(completed) + failed_count)

        if completed:
            latencies = [elapsed_ms(s.created_at, s.updated_at) for s in completed]
            result.average_settlement_time_ms = sum(latencies) // len(latencies)

        chains: Dict[int, DistributionBucket] = defaultdict(DistributionBucket)
        tokens: Dict[str, DistributionBucket] = defaultdict(DistributionBucket)
        daily: Dict[str, int] = defaultdict(int)

        for settlement in settlements:
            chains[settlement.chain_id].count += settlement.tip_count
            tokens[settlement.token_address].count += settlement.tip_count
            tokens[settlement.token_address].volume += settlement.total_amount
            if settlement.status == SettlementStatus.COMPLETED:
                chains[settlement.chain_id].volume += settlement.converted_amount
                daily[settlement.updated_at.date().isoformat()] += settlement.converted_amount

        result.chain_distribution = dict(chains)
        result.token_distribution = dict(tokens)
        result.daily_volume = dict(sorted(daily.items()))

        recent = sorted(settlements, key=lambda s: s.updated_at, reverse=True)
        result.recent_activity = recent[:self.settings.recent_activity_limit]

        return result
