"""
Bridge orchestrator - drives a closed batch through conversion and bridging.

State machine per settlement:
    batching -> converting -> bridging -> completed
    converting | bridging -> failed
    failed -> converting (explicit retry via process_batch)

Each external call is bounded by ``external_call_timeout_seconds``. A timeout
or provider error is recorded on the settlement as ``failed`` and never
retried automatically. Any other exception raised during conversion propagates
and leaves the batch in ``converting`` for inspection; ``fail_stalled`` moves it
to ``failed``. Once conversion has succeeded every bridge-side exception is
recorded as ``failed``.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Set

import structlog

from streamtip.core.config import Settings, settings as default_settings
from streamtip.core.exceptions import (
    ConcurrentRunError,
    ExternalServiceError,
    IllegalTransitionError,
    BridgeError,
    StreamTipException,
)
from streamtip.core.timeutils import Clock, utc_now
from streamtip.models import ACTIVE_STATUSES, RevenueSplit, Settlement, SettlementStatus
from .ledger import Ledger
from .providers import (
    BridgeProvider,
    BridgeTransferRequest,
    ConversionProvider,
    ConversionRequest,
)


logger = structlog.get_logger(__name__)


@dataclass
class OrchestratorStats:
    """Statistics for orchestrator runs."""
    total_runs: int = 0
    completed_runs: int = 0
    failed_runs: int = 0
    consecutive_failures: int = 0
    rejected_concurrent: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        finished = self.completed_runs + self.failed_runs
        if finished == 0:
            return 0.0
        return self.completed_runs / finished


@dataclass
class BridgeHealth:
    """Point-in-time health of the bridging pipeline."""
    healthy: bool
    in_flight_count: int
    last_error: Optional[str] = None
    consecutive_failures: int = 0


class BridgeOrchestrator:
    """Runs the conversion and bridge workflow for closed settlements."""

    def __init__(
        self,
        ledger: Ledger,
        conversion_provider: ConversionProvider,
        bridge_provider: BridgeProvider,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.logger = logger.bind(service="bridge_orchestrator")
        self.ledger = ledger
        self.conversion_provider = conversion_provider
        self.bridge_provider = bridge_provider
        self.settings = settings or default_settings
        self._clock = clock or utc_now

        self.stats = OrchestratorStats()
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, settlement_id: str) -> bool:
        return settlement_id in self._in_flight

    async def process_batch(
        self,
        settlement_id: str,
        expected_status: Optional[SettlementStatus] = None,
    ) -> Settlement:
        """
        Run or resume processing for a settlement.

        - ``batching``: full run from conversion
        - ``failed``: retry from conversion with the frozen member set
        - ``completed``: no-op, returns the stored result

        With ``expected_status`` set, a settlement found in any other status is
        returned unchanged instead of processed.

        Raises:
            SettlementNotFoundError: unknown id
            ConcurrentRunError: a run for this id is already active
            IllegalTransitionError: batch still open, or stalled mid-run
        """
        if settlement_id in self._in_flight:
            self.stats.rejected_concurrent += 1
            raise ConcurrentRunError(settlement_id)

        # Claimed before the first await so a second caller sees it
        self._in_flight.add(settlement_id)
        try:
            settlement = await self.ledger.get_settlement(settlement_id)

            if expected_status is not None and settlement.status != expected_status:
                self.logger.debug(
                    "Run skipped, status moved on",
                    settlement_id=settlement_id,
                    status=settlement.status.value,
                    expected=expected_status.value
                )
                return settlement
            if settlement.status == SettlementStatus.COMPLETED:
                return settlement
            if settlement.status == SettlementStatus.PENDING:
                raise IllegalTransitionError(
                    settlement_id,
                    settlement.status.value,
                    SettlementStatus.CONVERTING.value,
                    "batch is still open"
                )
            if settlement.status in ACTIVE_STATUSES:
                raise IllegalTransitionError(
                    settlement_id,
                    settlement.status.value,
                    SettlementStatus.CONVERTING.value,
                    "previous run stalled; fail it before retrying"
                )

            if settlement.status == SettlementStatus.FAILED:
                self.logger.info("Retrying failed settlement", settlement_id=settlement_id, attempt=settlement.attempt + 1)

            self.stats.total_runs += 1
            return await self._run(settlement_id)
        finally:
            self._in_flight.discard(settlement_id)

    async def _run(self, settlement_id: str) -> Settlement:
        settlement = await self.ledger.update_status(settlement_id, SettlementStatus.CONVERTING)
        timeout = self.settings.external_call_timeout_seconds

        # Step 2: conversion, attempted once per entry into converting
        try:
            conversion = await asyncio.wait_for(
                self.conversion_provider.convert(ConversionRequest(
                    settlement_id=settlement_id,
                    idempotency_key=settlement.idempotency_key,
                    chain_id=settlement.chain_id,
                    token_address=settlement.token_address,
                    amount=settlement.total_amount,
                    destination_currency=self.settings.destination_currency,
                )),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return await self._fail(settlement_id, f"conversion timed out after {timeout}s")
        except ExternalServiceError as e:
            return await self._fail(settlement_id, f"conversion failed: {e.message}")

        converted_amount = conversion.converted_amount
        if converted_amount <= 0:
            return await self._fail(settlement_id, "conversion returned no proceeds")

        # Step 3: bridge and wait for confirmation depth
        settlement = await self.ledger.update_status(
            settlement_id, SettlementStatus.BRIDGING, converted_amount=converted_amount
        )
        transaction_hash = None
        try:
            transaction_hash = await asyncio.wait_for(
                self.bridge_provider.submit_transfer(BridgeTransferRequest(
                    settlement_id=settlement_id,
                    idempotency_key=f"{settlement.idempotency_key}:bridge",
                    amount=converted_amount,
                    currency=self.settings.destination_currency,
                    destination_chain_id=self.settings.destination_chain_id,
                    recipient_address=self.settings.settlement_wallet_address,
                )),
                timeout=timeout,
            )
            await asyncio.wait_for(
                self.bridge_provider.wait_for_confirmation(
                    transaction_hash, self.settings.bridge_confirmations
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return await self._fail(settlement_id, f"bridge timed out after {timeout}s", transaction_hash)
        except ExternalServiceError as e:
            if isinstance(e, BridgeError) and e.transaction_hash:
                transaction_hash = e.transaction_hash
            return await self._fail(settlement_id, f"bridge failed: {e.message}", transaction_hash)
        except Exception as e:
            # Converted funds are committed; every bridge-side failure is recorded
            self.logger.error("Bridge client error", settlement_id=settlement_id, error=str(e), exc_info=True)
            return await self._fail(settlement_id, f"bridge failed: {e}", transaction_hash)

        # Step 4: revenue split
        split = RevenueSplit.compute(
            converted_amount,
            self.settings.platform_fee_bps,
            self.settings.business_share_bps,
        )
        completed = await self.ledger.update_status(
            settlement_id,
            SettlementStatus.COMPLETED,
            destination_tx_hash=transaction_hash,
            platform_fee=split.platform_fee,
            business_share=split.business_share,
            streamer_share=split.streamer_share,
        )

        self.stats.completed_runs += 1
        self.stats.consecutive_failures = 0
        self.stats.last_completed_at = self._clock()

        self.logger.info(
            "Settlement completed",
            settlement_id=settlement_id,
            converted_amount=converted_amount,
            destination_tx_hash=transaction_hash,
            platform_fee=split.platform_fee,
            business_share=split.business_share,
            streamer_share=split.streamer_share
        )
        return completed

    async def _fail(
        self,
        settlement_id: str,
        detail: str,
        transaction_hash: Optional[str] = None,
    ) -> Settlement:
        fields = {"destination_tx_hash": transaction_hash} if transaction_hash else {}
        failed = await self.ledger.update_status(settlement_id, SettlementStatus.FAILED, detail, **fields)

        self.stats.failed_runs += 1
        self.stats.consecutive_failures += 1
        self.stats.last_error = detail
        self.stats.last_error_at = self._clock()

        self.logger.warning(
            "Settlement failed",
            settlement_id=settlement_id,
            error=detail,
            destination_tx_hash=transaction_hash,
            attempt=failed.attempt
        )
        return failed

    async def fail_stalled(self, settlement_id: str, detail: str) -> Settlement:
        """Mark a batch left in converting/bridging without an active run as failed."""
        if settlement_id in self._in_flight:
            raise ConcurrentRunError(settlement_id)
        settlement = await self.ledger.get_settlement(settlement_id)
        if settlement.status not in ACTIVE_STATUSES:
            raise IllegalTransitionError(
                settlement_id,
                settlement.status.value,
                SettlementStatus.FAILED.value,
                "only converting or bridging batches can be marked stalled"
            )
        return await self._fail(settlement_id, detail, settlement.destination_tx_hash)

    def dispatch(
        self,
        settlement_id: str,
        expected_status: SettlementStatus = SettlementStatus.BATCHING,
    ) -> asyncio.Task:
        """
        Schedule ``process_batch`` in the background.

        The run only starts if the settlement is still in ``expected_status``
        when the task gets to it, so a batch that failed in the meantime is
        left for an explicit retry.
        """
        task = asyncio.create_task(self._process_in_background(settlement_id, expected_status))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process_in_background(self, settlement_id: str, expected_status: SettlementStatus) -> None:
        try:
            await self.process_batch(settlement_id, expected_status)
        except ConcurrentRunError:
            self.logger.debug("Dispatch skipped, run already active", settlement_id=settlement_id)
        except StreamTipException as e:
            self.logger.warning("Dispatched run rejected", settlement_id=settlement_id, error=e.message, code=e.code)
        except Exception as e:
            self.logger.error("Dispatched run crashed", settlement_id=settlement_id, error=str(e), exc_info=True)

    async def wait_idle(self) -> None:
        """Wait for all background runs started by ``dispatch``."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def health(self) -> BridgeHealth:
        return BridgeHealth(
            healthy=self.stats.consecutive_failures < self.settings.bridge_unhealthy_after_failures,
            in_flight_count=self.in_flight_count,
            last_error=self.stats.last_error,
            consecutive_failures=self.stats.consecutive_failures,
        )
