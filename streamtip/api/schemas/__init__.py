"""
Typed request/response schemas for the settlement operations.
"""

from .common import (
    APIResponse,
    ErrorResponse,
    HealthCheckResponse,
    SuccessResponse,
    create_error_response,
    create_success_response,
)
from .settlements import (
    BridgeStatusResponse,
    ManualSettleRequest,
    ManualSettleResponse,
    PendingBatch,
    PendingTotalEntry,
    PendingTotalsResponse,
    ProcessBatchResponse,
    QueueTipRequest,
    QueueTipResponse,
    SettlementRecord,
    SettlementStatusResponse,
)
from .analytics import AnalyticsResponse, DistributionEntry

__all__ = [
    "APIResponse",
    "ErrorResponse",
    "HealthCheckResponse",
    "SuccessResponse",
    "create_error_response",
    "create_success_response",
    "BridgeStatusResponse",
    "ManualSettleRequest",
    "ManualSettleResponse",
    "PendingBatch",
    "PendingTotalEntry",
    "PendingTotalsResponse",
    "ProcessBatchResponse",
    "QueueTipRequest",
    "QueueTipResponse",
    "SettlementRecord",
    "SettlementStatusResponse",
    "AnalyticsResponse",
    "DistributionEntry",
]
