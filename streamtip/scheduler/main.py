"""
Main entry point for the settlement scheduler process.
"""

import asyncio
import signal
from typing import Optional

import structlog

from streamtip.core.config import Settings, settings as default_settings
from streamtip.core.exceptions import ConfigurationError
from streamtip.core.logging import setup_logging
from streamtip.services.providers import SimulatedBridgeProvider, SimulatedConversionProvider
from streamtip.services.settlement_service import SettlementService, configure_settlement_service
from .settlement_scheduler import SettlementScheduler


logger = structlog.get_logger(__name__)


class SchedulerMain:
    """Wires the settlement service and scheduler for a standalone process."""

    def __init__(self, settings: Optional[Settings] = None, service: Optional[SettlementService] = None):
        self.settings = settings or default_settings
        self.service = service
        self.scheduler: Optional[SettlementScheduler] = None
        self._stop_event = asyncio.Event()

    def initialize(self):
        if self.service is None:
            if not self.settings.demo_mode:
                raise ConfigurationError(
                    "No conversion/bridge providers configured; set STREAMTIP_DEMO_MODE=true "
                    "or pass a configured SettlementService"
                )
            self.service = SettlementService(
                SimulatedConversionProvider(),
                SimulatedBridgeProvider(),
                settings=self.settings,
            )
        configure_settlement_service(self.service)
        self.scheduler = SettlementScheduler(self.service)
        logger.info("Scheduler service initialized", demo_mode=self.settings.demo_mode)

    async def run(self):
        self.initialize()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except NotImplementedError:
                # Not supported on Windows event loops
                pass

        async with self.scheduler:
            await self._stop_event.wait()

        await self.service.orchestrator.wait_idle()
        logger.info("Scheduler service stopped")

    def request_stop(self):
        self._stop_event.set()


async def main():
    setup_logging()
    await SchedulerMain().run()


if __name__ == "__main__":
    asyncio.run(main())
