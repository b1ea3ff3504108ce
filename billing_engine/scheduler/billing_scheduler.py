"""Periodic billing scheduler.

Runs one billing pass immediately on start and then every
``interval_minutes``. Passes execute in a worker thread so the event loop
stays responsive to signals and manual triggers.
"""

import asyncio
import contextlib
import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from billing_engine.config import settings
from billing_engine.schemas.billing_lifecycle import (
    BillingCycleRunResponse,
    BillingPassResponse,
    SchedulerStatus,
)
from billing_engine.services.billing_lifecycle.cycles import CycleResult
from billing_engine.services.billing_lifecycle.dispatch import BillingCycleDispatcher
from billing_engine.services.billing_lifecycle.overages import OverageResult

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class SchedulerHandle:
    """Token returned by ``start``; pass it to ``stop`` to release the timer."""

    task: asyncio.Task
    started_at: datetime
    released: bool = field(default=False)


class BillingCycleScheduler:
    def __init__(
        self,
        dispatcher: BillingCycleDispatcher,
        interval_minutes: int = 60,
        include_overages: bool = True,
        include_cleanup: bool = True,
    ):
        if interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        self.dispatcher = dispatcher
        self.interval_minutes = interval_minutes
        self.include_overages = include_overages
        self.include_cleanup = include_cleanup
        self._handle: SchedulerHandle | None = None
        self._last_run_at: datetime | None = None
        self._next_run_at: datetime | None = None
        self._pass_count = 0

    @property
    def is_running(self) -> bool:
        return self._handle is not None and not self._handle.task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> SchedulerHandle:
        """Start the timer loop on the running event loop.

        Calling start again while running returns the live handle.
        """
        if self.is_running:
            logger.info("Billing scheduler is already running")
            return self._handle
        task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="billing-scheduler"
        )
        self._handle = SchedulerHandle(task=task, started_at=datetime.now(timezone.utc))
        logger.info(
            f"Billing scheduler started with {self.interval_minutes} minute intervals"
        )
        return self._handle

    async def stop(self, handle: SchedulerHandle) -> None:
        """Cancel the timer loop owned by ``handle``.

        A handle is released once; stopping it again is a no-op.
        """
        if handle.released:
            return
        try:
            if not handle.task.done():
                handle.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await handle.task
        finally:
            handle.released = True
            if self._handle is handle:
                self._handle = None
                self._next_run_at = None
            logger.info("Billing scheduler stopped")

    @contextlib.asynccontextmanager
    async def running(self):
        handle = self.start()
        try:
            yield handle
        finally:
            await self.stop(handle)

    async def _run_loop(self) -> None:
        interval_seconds = self.interval_minutes * 60
        while True:
            start = time.monotonic()
            try:
                await self.run_pass()
            except Exception as e:
                logger.error(f"Billing pass error: {e}")

            elapsed = time.monotonic() - start
            sleep_time = max(0, interval_seconds - elapsed)
            self._next_run_at = datetime.now(timezone.utc) + timedelta(seconds=sleep_time)
            await asyncio.sleep(sleep_time)

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    async def _in_thread(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def run_pass(self) -> BillingPassResponse:
        logger.info("Running scheduled billing tasks...")
        summary = await self._in_thread(
            self.dispatcher.run_pass, self.include_overages, self.include_cleanup
        )
        self._last_run_at = summary.run_at
        self._pass_count += 1
        logger.info(
            f"Billing pass {self._pass_count} complete: "
            f"{summary.cycles.cycles_processed} cycles processed, "
            f"{summary.cycles.cycles_failed} failed, "
            f"{summary.overage_invoices_paid} overage invoices paid"
        )
        return summary

    async def process_billing_cycles(self) -> BillingCycleRunResponse:
        return await self._in_thread(self.dispatcher.process_billing_cycles)

    async def process_billing_cycle(self, cycle_id) -> CycleResult:
        return await self._in_thread(self.dispatcher.process_billing_cycle, cycle_id)

    async def process_overage_billing(self, tenant_id: str) -> OverageResult:
        return await self._in_thread(self.dispatcher.process_overage_billing, tenant_id)

    async def trigger_billing_cycles(self) -> BillingCycleRunResponse:
        logger.info("Manually triggering billing cycle processing")
        return await self.process_billing_cycles()

    async def trigger_overage_billing(self, tenant_id: str) -> OverageResult:
        logger.info(f"Manually triggering overage billing for tenant {tenant_id}")
        return await self.process_overage_billing(tenant_id)

    def get_status(self) -> SchedulerStatus:
        running = self.is_running
        return SchedulerStatus(
            is_running=running,
            interval_minutes=self.interval_minutes,
            max_concurrent_jobs=self.dispatcher.max_concurrent_jobs,
            started_at=self._handle.started_at if running else None,
            last_run_at=self._last_run_at,
            next_run_at=self._next_run_at if running else None,
        )


async def main():
    """Entry point for the billing scheduler service."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    from billing_engine.services.billing_lifecycle import dispatcher

    scheduler = BillingCycleScheduler(
        dispatcher, interval_minutes=settings.scheduler_interval_minutes
    )
    handle = scheduler.start()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    def handle_signal():
        logger.info("Received shutdown signal")
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)

    try:
        await shutdown.wait()
    finally:
        await scheduler.stop(handle)


if __name__ == "__main__":
    asyncio.run(main())
