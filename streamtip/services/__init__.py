"""
Settlement core services.
"""

from .ledger import KeyedLocks, Ledger
from .batch_aggregator import BatchAggregator, QueuedTip
from .bridge_orchestrator import BridgeHealth, BridgeOrchestrator, OrchestratorStats
from .analytics import AnalyticsEngine, StreamerAnalytics
from .providers import (
    BridgeProvider,
    BridgeTransferRequest,
    ConversionProvider,
    ConversionRequest,
    ConversionResult,
    SimulatedBridgeProvider,
    SimulatedConversionProvider,
)
from .settlement_service import (
    SettlementService,
    configure_settlement_service,
    get_settlement_service,
)

__all__ = [
    "KeyedLocks",
    "Ledger",
    "BatchAggregator",
    "QueuedTip",
    "BridgeHealth",
    "BridgeOrchestrator",
    "OrchestratorStats",
    "AnalyticsEngine",
    "StreamerAnalytics",
    "BridgeProvider",
    "BridgeTransferRequest",
    "ConversionProvider",
    "ConversionRequest",
    "ConversionResult",
    "SimulatedBridgeProvider",
    "SimulatedConversionProvider",
    "SettlementService",
    "configure_settlement_service",
    "get_settlement_service",
]
