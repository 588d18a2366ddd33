"""
Order Sync Job Runner

Runs OrderSyncService.run_cycle() every ORDER_SYNC_INTERVAL_SECONDS.

stop() never interrupts a cycle: the loop only waits between cycles, so a
cycle in progress finishes (and commits its checkpoint) before the runner
exits. The heartbeat exposes the last summary and a consecutive failure
counter for /health.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from orderbridge.core.config import settings
from orderbridge.services.order_sync import OrderSyncService, SyncCycleSummary

logger = logging.getLogger(__name__)

# Consecutive failed cycles before the heartbeat reports the job unhealthy
UNHEALTHY_AFTER_FAILURES = 3


class OrderSyncJobRunner:
    """
    Usage:
        runner = OrderSyncJobRunner(service)
        await runner.start()
        ...
        await runner.stop()
    """

    def __init__(self, service: Optional[OrderSyncService] = None, interval_seconds: Optional[int] = None):
        self.service = service
        self.interval_seconds = interval_seconds or settings.ORDER_SYNC_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False

        self.last_run: Optional[str] = None
        self.last_success: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_summary: Optional[SyncCycleSummary] = None
        self.total_cycles = 0
        self.consecutive_failures = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, service: Optional[OrderSyncService] = None) -> None:
        if service is not None:
            self.service = service
        if self.service is None:
            raise RuntimeError("OrderSyncJobRunner has no OrderSyncService")
        if self._running:
            logger.info("[SYNC] Order sync job already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"[SYNC] Order sync job started (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop after the in-flight cycle, if any, has finished."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("[SYNC] Order sync job stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> Optional[SyncCycleSummary]:
        """One cycle with heartbeat bookkeeping. Never raises."""
        self.last_run = datetime.now(timezone.utc).isoformat()
        try:
            summary = await self.service.run_cycle()
        except Exception as e:
            self.consecutive_failures += 1
            self.last_error = str(e)
            logger.exception(f"[SYNC] Order sync cycle crashed: {e}")
            return None

        if summary.skipped_overlap:
            return summary

        self.total_cycles += 1
        self.last_summary = summary
        if summary.success:
            self.consecutive_failures = 0
            self.last_success = self.last_run
            self.last_error = None
        else:
            self.consecutive_failures += 1
            self.last_error = (summary.errors[-1] if summary.errors else {}).get("message")
            if self.consecutive_failures >= UNHEALTHY_AFTER_FAILURES:
                logger.error(f"[SYNC] {self.consecutive_failures} consecutive order sync cycles failed")
        return summary

    def heartbeat(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "healthy": self.consecutive_failures < UNHEALTHY_AFTER_FAILURES,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run,
            "last_success": self.last_success,
            "last_error": self.last_error,
            "total_cycles": self.total_cycles,
            "consecutive_failures": self.consecutive_failures,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }


# Global runner instance
order_sync_job = OrderSyncJobRunner()
