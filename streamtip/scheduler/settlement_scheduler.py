"""
Settlement scheduler.

This service provides:
- Periodic close of open groups whose batching window has elapsed
- Dispatch of closed batches still waiting in ``batching``
- Run statistics and a health snapshot
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from streamtip.core.timeutils import utc_now
from streamtip.models import SettlementStatus
from streamtip.services.settlement_service import SettlementService


logger = structlog.get_logger(__name__)


class SchedulerStatus(Enum):
    """Status of the settlement scheduler."""
    STOPPED = "stopped"
    WAITING = "waiting"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass
class SweepResult:
    """Outcome of one sweep."""
    closed_batch_ids: List[str] = field(default_factory=list)
    dispatched_batch_ids: List[str] = field(default_factory=list)


@dataclass
class SchedulerStats:
    """Statistics for scheduler operations."""
    last_run: Optional[datetime] = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    batches_closed: int = 0
    batches_dispatched: int = 0
    last_error: Optional[str] = None
    uptime_start: Optional[datetime] = None


class SettlementScheduler:
    """Runs window-based closes and batch dispatch on a fixed interval."""

    def __init__(self, service: SettlementService, interval_seconds: Optional[int] = None):
        self.logger = logger.bind(service="settlement_scheduler")
        self.service = service
        self.interval_seconds = interval_seconds or service.settings.scheduler_interval
        self.enabled = service.settings.scheduler_enabled

        self.status = SchedulerStatus.STOPPED
        self.stats = SchedulerStats()
        self._should_stop = False
        self._scheduler_task: Optional[asyncio.Task] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def run_once(self) -> SweepResult:
        """Perform one sweep: close expired groups, then dispatch waiting batches."""
        result = SweepResult()

        closed = await self.service.aggregator.sweep_expired(dispatch=False)
        result.closed_batch_ids = [s.settlement_id for s in closed]

        orchestrator = self.service.orchestrator
        for settlement in await self.service.ledger.list_settlements([SettlementStatus.BATCHING]):
            if orchestrator.is_in_flight(settlement.settlement_id):
                continue
            orchestrator.dispatch(settlement.settlement_id)
            result.dispatched_batch_ids.append(settlement.settlement_id)

        self.stats.batches_closed += len(result.closed_batch_ids)
        self.stats.batches_dispatched += len(result.dispatched_batch_ids)

        if result.closed_batch_ids or result.dispatched_batch_ids:
            self.logger.info(
                "Sweep completed",
                closed=len(result.closed_batch_ids),
                dispatched=len(result.dispatched_batch_ids)
            )
        return result

    async def start(self):
        """Start the scheduler loop in the background."""
        if not self.enabled:
            self.logger.info("Settlement scheduler is disabled")
            return

        if self.status != SchedulerStatus.STOPPED:
            self.logger.warning("Scheduler already running", current_status=self.status.value)
            return

        self._should_stop = False
        self.status = SchedulerStatus.WAITING
        self.stats.uptime_start = utc_now()
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())

        self.logger.info("Settlement scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop the scheduler loop."""
        if self.status == SchedulerStatus.STOPPED:
            return

        self.logger.info("Stopping settlement scheduler")
        self._should_stop = True

        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass

        self.status = SchedulerStatus.STOPPED
        self.logger.info("Settlement scheduler stopped")

    async def _scheduler_loop(self):
        while not self._should_stop:
            self.status = SchedulerStatus.PROCESSING
            self.stats.total_runs += 1
            self.stats.last_run = utc_now()
            try:
                await self.run_once()
                self.stats.successful_runs += 1
                self.status = SchedulerStatus.WAITING
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.failed_runs += 1
                self.stats.last_error = str(e)
                self.status = SchedulerStatus.ERROR
                self.logger.error("Scheduler sweep failed", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    def health_check(self) -> Dict[str, Any]:
        """Get health status of the scheduler."""
        return {
            "healthy": self.status in (SchedulerStatus.WAITING, SchedulerStatus.PROCESSING),
            "status": self.status.value,
            "enabled": self.enabled,
            "interval_seconds": self.interval_seconds,
            "total_runs": self.stats.total_runs,
            "failed_runs": self.stats.failed_runs,
            "batches_closed": self.stats.batches_closed,
            "batches_dispatched": self.stats.batches_dispatched,
            "last_run": self.stats.last_run.isoformat() if self.stats.last_run else None,
            "last_error": self.stats.last_error,
        }
