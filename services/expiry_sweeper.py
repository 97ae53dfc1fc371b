"""
Background expiry sweep
Expires overdue open orders and releases subscriptions of finished orders
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from order_store import OrderStore, utc_now
from services.subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Fixed-interval asyncio task; safe to run alongside other instances"""

    def __init__(
        self,
        order_store: OrderStore,
        subscription_manager: SubscriptionManager,
        interval_seconds: int = 60,
        clock: Callable[[], datetime] = utc_now
    ):
        self.order_store = order_store
        self.subscription_manager = subscription_manager
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run one sweep; returns counts of expired orders and released subscriptions"""
        now = now or self._clock()
        expired = await self.order_store.expire_overdue(now)
        for order in expired:
            logger.info(f"⏰ Order {order.order_number} expired (received {order.received_amount}/{order.expected_amount} {order.currency})")
        released = await self.subscription_manager.release_terminal_subscriptions(now)
        return {'expired': len(expired), 'released': released}

    async def _run(self) -> None:
        logger.info(f"✅ Expiry sweeper started (every {self.interval_seconds}s)")
        while True:
            try:
                await self.sweep_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("🔄 Expiry sweeper cancelled")
                raise
            except Exception as e:
                logger.warning(f"⚠️ Expiry sweep error: {e}")
                await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("🔄 Expiry sweeper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
