"""
Background scheduling for batch closes and dispatch.
"""

from .settlement_scheduler import SchedulerStats, SchedulerStatus, SettlementScheduler, SweepResult

__all__ = ["SchedulerStats", "SchedulerStatus", "SettlementScheduler", "SweepResult"]
