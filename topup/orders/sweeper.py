"""
Expiry Sweeper

Background task that periodically expires open orders past the payment
window. Runs inside the API process; the cron endpoint triggers the same
sweep for deployments without long-lived processes.
"""
import asyncio
from typing import Optional

from topup.logging import get_logger
from topup.orders.service import OrderService

logger = get_logger(__name__)


class ExpirySweeper:
    """Runs OrderService.expire_stale_orders every `interval_seconds`."""

    def __init__(self, order_service: OrderService, interval_seconds: float):
        self.order_service = order_service
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="expiry-sweeper")
        logger.info("Expiry sweeper started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.order_service.expire_stale_orders()
            except Exception:
                logger.exception("Expiry sweep failed")
