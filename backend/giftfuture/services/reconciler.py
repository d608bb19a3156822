"""Background sweep for purchases that never finished."""
import asyncio
from datetime import datetime, timedelta
from typing import Optional

import structlog

from giftfuture.config import get_settings
from giftfuture.services.fulfillment import (
    FulfillmentOrchestrator,
    get_fulfillment_orchestrator,
)

logger = structlog.get_logger()


class PurchaseReconciler:
    """
    Background sweep over stale pending_payment gifts.

    A purchase runs as a background task of the webhook request; if the
    process dies mid-purchase the gift would sit in pending_payment forever.
    This sweep hands such gifts back to the orchestrator, which either
    completes them from the venue's order status or expires them.
    """

    def __init__(
        self,
        orchestrator: FulfillmentOrchestrator,
        interval_seconds: int = 60,
        stale_after_seconds: int = 600,
    ):
        """
        Args:
            orchestrator: Orchestrator that resolves each stale gift
            interval_seconds: Seconds between sweeps
            stale_after_seconds: Age at which a pending_payment gift is stale
        """
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._running:
            logger.warning("Purchase reconciler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Purchase reconciler started",
            interval_seconds=self.interval_seconds,
            stale_after_seconds=self.stale_after_seconds,
        )

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Purchase reconciler stopped")

    async def _run_loop(self):
        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Error in purchase reconciler", error=str(e))

            await asyncio.sleep(self.interval_seconds)

    async def sweep(self) -> int:
        """
        Resolve every stale purchase once.

        Returns:
            Number of gifts examined
        """
        cutoff = datetime.utcnow() - timedelta(seconds=self.stale_after_seconds)
        stale = await self.orchestrator.store.list_stale_purchases(cutoff)

        for gift in stale:
            try:
                await self.orchestrator.reconcile_stale_purchase(gift)
            except Exception as e:
                logger.error(
                    "Error reconciling stale purchase",
                    gift_id=gift.id,
                    error=str(e),
                )

        if stale:
            logger.info("Stale purchases reconciled", count=len(stale))
        return len(stale)


# Singleton instance
_reconciler: Optional[PurchaseReconciler] = None


async def start_purchase_reconciler():
    """Start the reconciler with intervals from settings."""
    global _reconciler
    if _reconciler is None:
        settings = get_settings()
        orchestrator = await get_fulfillment_orchestrator()
        _reconciler = PurchaseReconciler(
            orchestrator,
            interval_seconds=settings.reconciler_interval_seconds,
            stale_after_seconds=settings.stale_purchase_after_seconds,
        )
    await _reconciler.start()


async def stop_purchase_reconciler():
    global _reconciler
    if _reconciler:
        await _reconciler.stop()
        _reconciler = None
