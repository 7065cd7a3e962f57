"""
External conversion and bridge providers.

The orchestrator talks to two collaborators:
- a conversion provider that swaps a raw amount of a source token into the
  destination settlement currency
- a bridge provider that transfers the converted amount to the destination
  chain and reports confirmation

Implementations must raise ``ConversionError`` / ``BridgeError`` for provider
side failures. Simulated providers back demo mode and tests.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional

import structlog

from streamtip.core.exceptions import BridgeError, ConversionError


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConversionRequest:
    """Swap ``amount`` of (chain_id, token_address) into ``destination_currency``."""
    settlement_id: str
    idempotency_key: str
    chain_id: int
    token_address: str
    amount: int
    destination_currency: str


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of an executed swap, amount in destination smallest units."""
    converted_amount: int
    reference: Optional[str] = None


@dataclass(frozen=True)
class BridgeTransferRequest:
    """Transfer ``amount`` of the destination currency to (chain, recipient)."""
    settlement_id: str
    idempotency_key: str
    amount: int
    currency: str
    destination_chain_id: int
    recipient_address: str


class ConversionProvider(ABC):
    """Quote-and-execute swap collaborator."""

    @abstractmethod
    async def convert(self, request: ConversionRequest) -> ConversionResult:
        """Execute the swap. Not assumed to be idempotent."""


class BridgeProvider(ABC):
    """Cross-chain transfer collaborator."""

    @abstractmethod
    async def submit_transfer(self, request: BridgeTransferRequest) -> str:
        """Submit the transfer and return the destination transaction hash."""

    @abstractmethod
    async def wait_for_confirmation(self, transaction_hash: str, confirmations: int) -> None:
        """Return once ``confirmations`` blocks deep; raise ``BridgeError`` on revert."""


class SimulatedConversionProvider(ConversionProvider):
    """
    Deterministic in-process swap.

    ``rates`` maps a lowercase token address to the number of destination
    smallest units paid per raw source unit. Requests are remembered by
    idempotency key, so a replayed key returns the first result.
    """

    def __init__(
        self,
        rates: Optional[Dict[str, Decimal]] = None,
        default_rate: Decimal = Decimal(1),
        latency_seconds: float = 0.0,
    ):
        self.logger = logger.bind(service="simulated_conversion")
        self.rates = {token.lower(): Decimal(rate) for token, rate in (rates or {}).items()}
        self.default_rate = Decimal(default_rate)
        self.latency_seconds = latency_seconds
        self.executed: Dict[str, ConversionResult] = {}

    async def convert(self, request: ConversionRequest) -> ConversionResult:
        if request.idempotency_key in self.executed:
            return self.executed[request.idempotency_key]

        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        rate = self.rates.get(request.token_address.lower(), self.default_rate)
        if rate <= 0:
            raise ConversionError(
                f"No route for token {request.token_address} on chain {request.chain_id}",
                {"token_address": request.token_address, "chain_id": request.chain_id}
            )

        converted = int((Decimal(request.amount) * rate).to_integral_value(rounding=ROUND_DOWN))
        result = ConversionResult(
            converted_amount=converted,
            reference=f"swap_{_digest(request.idempotency_key)[:16]}",
        )
        self.executed[request.idempotency_key] = result

        self.logger.info(
            "Simulated swap executed",
            settlement_id=request.settlement_id,
            amount=request.amount,
            converted_amount=converted,
            currency=request.destination_currency
        )
        return result


class SimulatedBridgeProvider(BridgeProvider):
    """Deterministic in-process bridge; hashes derive from the idempotency key."""

    def __init__(self, latency_seconds: float = 0.0):
        self.logger = logger.bind(service="simulated_bridge")
        self.latency_seconds = latency_seconds
        self.transfers: Dict[str, BridgeTransferRequest] = {}

    async def submit_transfer(self, request: BridgeTransferRequest) -> str:
        transaction_hash = "0x" + _digest(request.idempotency_key)
        if transaction_hash not in self.transfers:
            self.transfers[transaction_hash] = request
            self.logger.info(
                "Simulated bridge transfer submitted",
                settlement_id=request.settlement_id,
                amount=request.amount,
                destination_chain_id=request.destination_chain_id,
                transaction_hash=transaction_hash
            )
        return transaction_hash

    async def wait_for_confirmation(self, transaction_hash: str, confirmations: int) -> None:
        if transaction_hash not in self.transfers:
            raise BridgeError("Unknown bridge transaction", transaction_hash)
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()
