"""
Settlement service - the command/query surface consumed by the API layer.

Maps each named operation onto the ledger, aggregator, orchestrator and
analytics engine. Validates caller input up front and raises typed
exceptions; no batching or bridging rules live here.
"""

from typing import List, Optional

import pydantic
import structlog

from streamtip.api.schemas import (
    AnalyticsResponse,
    BridgeStatusResponse,
    HealthCheckResponse,
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
from streamtip.core.config import Settings, settings as default_settings
from streamtip.core.exceptions import ConcurrentRunError, ConfigurationError, ValidationError
from streamtip.core.timeutils import Clock, utc_now
from streamtip.models import SettlementStatus, Tip
from .analytics import AnalyticsEngine
from .batch_aggregator import BatchAggregator
from .bridge_orchestrator import BridgeOrchestrator
from .ledger import Ledger
from .providers import (
    BridgeProvider,
    ConversionProvider,
    SimulatedBridgeProvider,
    SimulatedConversionProvider,
)


logger = structlog.get_logger(__name__)


def _validation_error(error: pydantic.ValidationError) -> ValidationError:
    errors = [
        {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
        for e in error.errors()
    ]
    message = "; ".join(f"{e['field']}: {e['message']}" if e["field"] else e["message"] for e in errors)
    return ValidationError(message or "Invalid request", {"errors": errors})


class SettlementService:
    """
    Façade over the settlement core.

    Components can be injected; anything omitted is built from ``settings``.
    """

    def __init__(
        self,
        conversion_provider: ConversionProvider,
        bridge_provider: BridgeProvider,
        settings: Optional[Settings] = None,
        ledger: Optional[Ledger] = None,
        clock: Optional[Clock] = None,
    ):
        self.logger = logger.bind(service="settlement_service")
        self.settings = settings or default_settings
        self._clock = clock or utc_now

        self.ledger = ledger or Ledger(clock=self._clock)
        self.orchestrator = BridgeOrchestrator(
            self.ledger,
            conversion_provider,
            bridge_provider,
            settings=self.settings,
            clock=self._clock,
        )
        self.aggregator = BatchAggregator(
            self.ledger,
            settings=self.settings,
            dispatcher=self.orchestrator.dispatch if self.settings.auto_process else None,
            clock=self._clock,
        )
        self.analytics = AnalyticsEngine(self.ledger, settings=self.settings, clock=self._clock)

        self.logger.info(
            "Settlement service initialized",
            auto_process=self.settings.auto_process,
            destination_chain_id=self.settings.destination_chain_id,
            destination_currency=self.settings.destination_currency
        )

    # Commands

    async def queue_tip(
        self,
        transaction_hash: str,
        chain_id: int,
        token_address: str,
        amount,
        streamer_address: str,
        business_address: Optional[str] = None,
        message: Optional[str] = None,
    ) -> QueueTipResponse:
        """
        Accept a confirmed tip and group it into its open batch.

        Raises:
            ValidationError: missing or malformed input, unsupported chain
            DuplicateTipError: hash already recorded for the chain
        """
        try:
            request = QueueTipRequest(
                transaction_hash=transaction_hash,
                chain_id=chain_id,
                token_address=token_address,
                amount=amount,
                streamer_address=streamer_address,
                business_address=business_address,
                message=message,
            )
        except pydantic.ValidationError as e:
            raise _validation_error(e) from e

        self._check_chain(request.chain_id)
        self._check_lengths(request)
        if request.message and len(request.message) > self.settings.max_message_length:
            raise ValidationError(
                f"Message exceeds {self.settings.max_message_length} characters",
                {"length": len(request.message)}
            )

        tip = Tip(
            transaction_hash=request.transaction_hash,
            chain_id=request.chain_id,
            token_address=request.token_address,
            amount=request.amount,
            streamer_address=request.streamer_address,
            business_address=request.business_address,
            message=request.message,
            received_at=self._clock(),
        )
        queued = await self.aggregator.queue_tip(tip)

        return QueueTipResponse(
            settlement_id=queued.settlement_id,
            status=queued.status,
            estimated_time=self.settings.estimated_settlement_time,
        )

    async def manual_settle(
        self,
        streamer_address: str,
        chain_id: Optional[int] = None,
        token_address: Optional[str] = None,
    ) -> ManualSettleResponse:
        """Close matching open groups now and process each resulting batch."""
        try:
            request = ManualSettleRequest(
                streamer_address=streamer_address,
                chain_id=chain_id,
                token_address=token_address,
            )
        except pydantic.ValidationError as e:
            raise _validation_error(e) from e

        closed = await self.aggregator.manual_settle(
            request.streamer_address, request.chain_id, request.token_address
        )

        results = []
        for settlement in closed:
            try:
                processed = await self.orchestrator.process_batch(settlement.settlement_id)
            except ConcurrentRunError:
                # Picked up by the scheduler in the meantime
                processed = await self.ledger.get_settlement(settlement.settlement_id)
            results.append(ProcessBatchResponse.from_settlement(processed))

        return ManualSettleResponse(
            triggered_batch_ids=[s.settlement_id for s in closed],
            results=results,
        )

    async def process_batch(self, batch_id: str) -> ProcessBatchResponse:
        """
        Raises:
            NotFoundError: unknown batch id
            ConcurrentRunError: batch already being processed
            IllegalTransitionError: batch open or stalled mid-run
        """
        self._require_id(batch_id, "batch_id")
        settlement = await self.orchestrator.process_batch(batch_id)
        return ProcessBatchResponse.from_settlement(settlement)

    async def fail_stalled_batch(self, batch_id: str, detail: str = "marked stalled by operator") -> ProcessBatchResponse:
        self._require_id(batch_id, "batch_id")
        settlement = await self.orchestrator.fail_stalled(batch_id, detail)
        return ProcessBatchResponse.from_settlement(settlement)

    # Queries

    async def get_status(self, settlement_id: str) -> SettlementStatusResponse:
        self._require_id(settlement_id, "settlement_id")
        settlement = await self.ledger.get_settlement(settlement_id)
        return SettlementStatusResponse(
            settlement_id=settlement.settlement_id,
            status=settlement.status,
            destination_tx_hash=settlement.destination_tx_hash,
            error=settlement.error,
        )

    async def get_pending_batches(self) -> List[PendingBatch]:
        """Open groups plus closed batches still waiting for processing."""
        batches = [PendingBatch.from_group(g) for g in await self.ledger.list_open_groups()]
        queued = await self.ledger.list_settlements([SettlementStatus.BATCHING])
        batches.extend(PendingBatch.from_settlement(s) for s in queued)
        return batches

    async def get_bridge_status(self) -> BridgeStatusResponse:
        health = self.orchestrator.health()
        return BridgeStatusResponse(
            healthy=health.healthy,
            in_flight_count=health.in_flight_count,
            last_error=health.last_error,
            consecutive_failures=health.consecutive_failures,
        )

    async def get_streamer_settlements(
        self,
        streamer_address: str,
        limit: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[SettlementRecord]:
        """Settlements for a streamer, newest first."""
        streamer_address = self._normalize_address(streamer_address, "streamer_address")
        if limit is None:
            limit = self.settings.default_settlements_limit
        if limit < 1:
            raise ValidationError("limit must be positive", {"limit": limit})

        status_filter = None
        if status is not None:
            try:
                status_filter = SettlementStatus(status)
            except ValueError as e:
                raise ValidationError(f"Unknown status: {status}", {"status": status}) from e

        settlements = await self.ledger.list_by_streamer(streamer_address, status_filter, limit)
        return [SettlementRecord.from_settlement(s) for s in settlements]

    async def get_pending_totals(self, streamer_address: str) -> PendingTotalsResponse:
        streamer_address = self._normalize_address(streamer_address, "streamer_address")
        totals = await self.ledger.pending_totals(streamer_address)
        return PendingTotalsResponse({
            chain_id: {
                token: PendingTotalEntry(amount=total.amount, count=total.count)
                for token, total in tokens.items()
            }
            for chain_id, tokens in totals.items()
        })

    async def get_analytics(self, streamer_address: str, timeframe: Optional[str] = None) -> AnalyticsResponse:
        streamer_address = self._normalize_address(streamer_address, "streamer_address")
        analytics = await self.analytics.compute(streamer_address, timeframe)
        return AnalyticsResponse.from_analytics(analytics)

    async def get_health(self) -> HealthCheckResponse:
        bridge = self.orchestrator.health()
        services = {
            "ledger": "healthy",
            "bridge_service": "healthy" if bridge.healthy else "degraded",
            "settlement_service": "healthy",
        }
        overall = "healthy" if all(v == "healthy" for v in services.values()) else "degraded"
        return HealthCheckResponse(
            status=overall,
            version=self.settings.app_version,
            services=services,
            configuration={
                "supported_chains": len(self.settings.supported_chains),
                "destination_chain_id": self.settings.destination_chain_id,
                "destination_currency": self.settings.destination_currency,
                "demo_mode": self.settings.demo_mode,
                "auto_process": self.settings.auto_process,
            },
        )

    # Helpers

    def _check_chain(self, chain_id: int) -> None:
        if chain_id not in self.settings.supported_chains:
            raise ValidationError(
                f"Unsupported chain: {chain_id}",
                {"chain_id": chain_id, "supported": self.settings.supported_chain_ids()}
            )

    def _check_lengths(self, request: QueueTipRequest) -> None:
        limit = self.settings.max_address_length
        for field in ("transaction_hash", "token_address", "streamer_address", "business_address"):
            value = getattr(request, field)
            if value is not None and len(value) > limit:
                raise ValidationError(
                    f"{field} exceeds {limit} characters",
                    {"field": field, "length": len(value)}
                )

    @staticmethod
    def _require_id(value: Optional[str], field: str) -> None:
        if not value or not isinstance(value, str):
            raise ValidationError(f"{field} is required", {"field": field})

    @staticmethod
    def _normalize_address(value: Optional[str], field: str) -> str:
        if not value or not isinstance(value, str):
            raise ValidationError(f"{field} is required", {"field": field})
        return value.strip().lower()


# Global instance
_settlement_service: Optional[SettlementService] = None


def configure_settlement_service(service: Optional[SettlementService]) -> None:
    """Install (or clear) the process-wide service instance."""
    global _settlement_service
    _settlement_service = service


def get_settlement_service() -> SettlementService:
    """
    Get the process-wide service.

    In demo mode a service backed by simulated providers is created on first
    use; otherwise ``configure_settlement_service`` must have been called.
    """
    global _settlement_service
    if _settlement_service is None:
        if not default_settings.demo_mode:
            raise ConfigurationError("Settlement service is not configured with real providers")
        _settlement_service = SettlementService(
            SimulatedConversionProvider(),
            SimulatedBridgeProvider(),
        )
    return _settlement_service
