"""
Data model for tips, pending groups and settlements.
"""

from .tip import GroupKey, Tip
from .settlement import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    CLOSED_STATUSES,
    PendingGroup,
    PendingTotal,
    PendingTotals,
    RevenueSplit,
    Settlement,
    SettlementStatus,
    can_transition,
)

__all__ = [
    "GroupKey",
    "Tip",
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "CLOSED_STATUSES",
    "PendingGroup",
    "PendingTotal",
    "PendingTotals",
    "RevenueSplit",
    "Settlement",
    "SettlementStatus",
    "can_transition",
]
