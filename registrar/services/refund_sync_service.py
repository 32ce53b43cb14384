"""
Refund sync service: periodic gateway reconciliation.

Background worker that, every REFUND_SYNC_INTERVAL_SECONDS (default 1 hour),
first resolves charge attempts that never got mirrored locally (orphaned
gateway charges) and then reconciles refunds for every completed payment that
is not already fully refunded. Each step is idempotent, so the worker can be
stopped at any point and pick up where it left off on the next run.
"""

import asyncio
import logging
from typing import Dict, Optional

from registrar.database import db
from registrar.services import payment_service, refund_service
from registrar.utils.constants import DEFAULT_REFUND_SYNC_INTERVAL_SECONDS
from registrar.utils.env_utils import get_float_env

logger = logging.getLogger(__name__)


class RefundSyncService:
    """Background service that keeps local payments in step with the gateway."""

    def __init__(self, interval_seconds: Optional[float] = None):
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else get_float_env("REFUND_SYNC_INTERVAL_SECONDS", DEFAULT_REFUND_SYNC_INTERVAL_SECONDS)
        )
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.last_result: Optional[Dict] = None

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        """Start the background sync worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event = asyncio.Event()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info(f"Refund sync worker started (every {self.interval_seconds:.0f}s)")

    def stop(self) -> None:
        """Stop the background sync worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Refund sync worker stopped")

    async def _poll_loop(self) -> None:
        """Main loop: run a sync, then sleep. Repeats until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in refund sync worker: {e}", exc_info=True)

            # Wait for the interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                # If wait_for returns normally, stop_event was set → exit
                break
            except asyncio.TimeoutError:
                # Timeout means interval elapsed, loop again
                pass

    async def run_once(self) -> Dict:
        """
        Run one full sync pass.

        Returns:
            Dict with the orphaned-charge and refund sweep summaries
        """
        async with db.AsyncSessionLocal() as session:
            orphans = await payment_service.recover_orphaned_charges(session)
            refunds = await refund_service.reconcile_all(session)

        self.last_result = {"orphaned_charges": orphans.to_dict(), "refunds": refunds.to_dict()}
        return self.last_result


# Global singleton
_sync_service = RefundSyncService()


def get_refund_sync_service() -> RefundSyncService:
    """Get the global refund sync service instance."""
    return _sync_service
