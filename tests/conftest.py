"""
Shared fixtures for settlement core tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest

from streamtip.core.config import Settings
from streamtip.core.exceptions import BridgeError
from streamtip.models import Tip
from streamtip.services.ledger import Ledger
from streamtip.services.providers import (
    BridgeProvider,
    BridgeTransferRequest,
    ConversionProvider,
    ConversionRequest,
    ConversionResult,
)
from streamtip.services.settlement_service import SettlementService


STREAMER = "0x" + "a1" * 20
OTHER_STREAMER = "0x" + "a2" * 20
BUSINESS = "0x" + "b1" * 20
TOKEN = "0x" + "c1" * 20
OTHER_TOKEN = "0x" + "c2" * 20


def tx(n: int) -> str:
    return "0x%064x" % n


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingConversionProvider(ConversionProvider):
    """Swap provider that records every request and can fail, hang or block."""

    def __init__(self, rate: Decimal = Decimal(2)):
        self.rate = rate
        self.requests: List[ConversionRequest] = []
        self.fail_with: Optional[Exception] = None
        self.hang = False
        self.gate: Optional[asyncio.Event] = None

    async def convert(self, request: ConversionRequest) -> ConversionResult:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.hang:
            await asyncio.Event().wait()
        if self.fail_with is not None:
            raise self.fail_with
        return ConversionResult(converted_amount=int(request.amount * self.rate), reference="ref")


class RecordingBridgeProvider(BridgeProvider):
    """Bridge provider that records submissions and can revert or hang."""

    def __init__(self):
        self.submissions: List[BridgeTransferRequest] = []
        self.confirmations: List[tuple] = []
        self.revert = False
        self.submit_error: Optional[Exception] = None
        self.hang_on_confirm = False

    async def submit_transfer(self, request: BridgeTransferRequest) -> str:
        self.submissions.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        return "0x" + ("%064x" % len(self.submissions))

    async def wait_for_confirmation(self, transaction_hash: str, confirmations: int) -> None:
        self.confirmations.append((transaction_hash, confirmations))
        if self.hang_on_confirm:
            await asyncio.Event().wait()
        if self.revert:
            raise BridgeError("transfer reverted", transaction_hash)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        min_settlement_amount=1000,
        max_batch_window_seconds=1800,
        auto_process=False,
        external_call_timeout_seconds=0.2,
        bridge_confirmations=3,
        scheduler_interval=1,
        settlement_wallet_address="0x" + "d1" * 20,
    )


@pytest.fixture
def conversion():
    return RecordingConversionProvider()


@pytest.fixture
def bridge():
    return RecordingBridgeProvider()


@pytest.fixture
def ledger(clock):
    return Ledger(clock=clock)


@pytest.fixture
def service(conversion, bridge, settings, clock):
    return SettlementService(conversion, bridge, settings=settings, clock=clock)


@pytest.fixture
def make_tip(clock):
    def _make(
        n: int,
        amount: int,
        streamer: str = STREAMER,
        chain_id: int = 1,
        token: str = TOKEN,
        business: Optional[str] = BUSINESS,
    ) -> Tip:
        return Tip(
            transaction_hash=tx(n),
            chain_id=chain_id,
            token_address=token,
            amount=amount,
            streamer_address=streamer,
            business_address=business,
            received_at=clock(),
        )
    return _make


async def queue(service: SettlementService, n: int, amount, /, **overrides):
    """Queue a tip through the façade with sensible defaults."""
    params = dict(
        transaction_hash=tx(n),
        chain_id=1,
        token_address=TOKEN,
        amount=amount,
        streamer_address=STREAMER,
        business_address=BUSINESS,
    )
    params.update(overrides)
    return await service.queue_tip(**params)
