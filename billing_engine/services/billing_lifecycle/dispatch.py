"""Discovery and bounded-concurrency dispatch of billing work.

Every job runs on its own session from ``session_factory``; a failure in one
cycle or tenant is logged and counted without affecting the rest of the batch.
"""

from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_engine.models.subscription import SubscriptionStatus, TenantSubscription
from billing_engine.schemas.billing_lifecycle import (
    BillingCycleRunResponse,
    BillingPassResponse,
)
from billing_engine.services.billing_lifecycle.cleanup import CleanupJob, CleanupResult
from billing_engine.services.billing_lifecycle.cycles import (
    BillingCycleProcessor,
    CycleResult,
    list_due_cycle_ids,
    release_stale_claims,
)
from billing_engine.services.billing_lifecycle.errors import InfrastructureFailure
from billing_engine.services.billing_lifecycle.overages import OverageBiller, OverageResult
from billing_engine.services.common import as_utc

logger = logging.getLogger(__name__)


class BillingCycleDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        processor: BillingCycleProcessor,
        overage_biller: OverageBiller,
        cleanup_job: CleanupJob,
        *,
        max_concurrent_jobs: int = 5,
        batch_size: int = 500,
        claim_timeout_minutes: int = 30,
        clock: Callable[[], datetime] | None = None,
    ):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self.session_factory = session_factory
        self.processor = processor
        self.overage_biller = overage_biller
        self.cleanup_job = cleanup_job
        self.max_concurrent_jobs = max_concurrent_jobs
        self.batch_size = batch_size
        self.claim_timeout_minutes = claim_timeout_minutes
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # Single units of work
    # ------------------------------------------------------------------

    def process_billing_cycle(self, cycle_id) -> CycleResult:
        session = self.session_factory()
        try:
            return self.processor.process(session, cycle_id)
        finally:
            session.close()

    def process_overage_billing(self, tenant_id: str) -> OverageResult:
        session = self.session_factory()
        try:
            return self.overage_biller.bill_tenant(session, tenant_id)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _discover(self, now: datetime) -> list:
        session = self.session_factory()
        try:
            return list_due_cycle_ids(
                session, now, self.processor.retry_policy.max_retries, self.batch_size
            )
        except SQLAlchemyError as exc:
            raise InfrastructureFailure(f"Billing cycle discovery failed: {exc}") from exc
        finally:
            session.close()

    def process_billing_cycles(self) -> BillingCycleRunResponse:
        """Process every due cycle with at most ``max_concurrent_jobs`` in flight."""
        now = self.now()
        cycle_ids = self._discover(now)
        summary = BillingCycleRunResponse(run_at=now, cycles_due=len(cycle_ids))
        if not cycle_ids:
            return summary

        logger.info(f"Processing {len(cycle_ids)} due billing cycles")
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_concurrent_jobs,
            thread_name_prefix="billing-cycle",
        ) as pool:
            futures = {
                pool.submit(self.process_billing_cycle, cycle_id): cycle_id
                for cycle_id in cycle_ids
            }
            for future in concurrent.futures.as_completed(futures):
                cycle_id = futures[future]
                try:
                    result = future.result()
                except Exception:
                    logger.exception(f"Error processing billing cycle {cycle_id}")
                    summary.cycles_failed += 1
                    continue
                if result.skipped:
                    summary.cycles_skipped += 1
                    continue
                summary.cycles_processed += 1
                if result.outcome == "succeeded":
                    summary.succeeded += 1
                elif result.outcome == "awaiting_retry":
                    summary.awaiting_retry += 1
                elif result.outcome == "exhausted":
                    summary.exhausted += 1
        logger.info(
            f"Billing cycles done: processed={summary.cycles_processed} "
            f"skipped={summary.cycles_skipped} failed={summary.cycles_failed}"
        )
        return summary

    def _tenants_with_active_subscriptions(self) -> list[str]:
        session = self.session_factory()
        try:
            return list(
                session.scalars(
                    select(TenantSubscription.tenant_id)
                    .where(TenantSubscription.status == SubscriptionStatus.active)
                    .distinct()
                    .order_by(TenantSubscription.tenant_id)
                ).all()
            )
        except SQLAlchemyError as exc:
            raise InfrastructureFailure(f"Tenant discovery failed: {exc}") from exc
        finally:
            session.close()

    def process_all_overages(self, summary: BillingPassResponse) -> BillingPassResponse:
        tenant_ids = self._tenants_with_active_subscriptions()
        summary.tenants_scanned = len(tenant_ids)
        for tenant_id in tenant_ids:
            try:
                result = self.process_overage_billing(tenant_id)
            except Exception:
                logger.exception(f"Error processing overage billing for tenant {tenant_id}")
                summary.overage_errors += 1
                continue
            if result.outcome == "paid":
                summary.overage_invoices_paid += 1
            elif result.outcome == "failed":
                summary.overage_invoices_failed += 1
        return summary

    def run_cleanup(self) -> CleanupResult:
        session = self.session_factory()
        try:
            return self.cleanup_job.run(session, self.now())
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _housekeeping(self) -> tuple[int, int]:
        now = self.now()
        session = self.session_factory()
        try:
            released = release_stale_claims(session, now, self.claim_timeout_minutes)
            created = self.processor.ensure_cycles(session, now)
            return released, created
        except SQLAlchemyError as exc:
            session.rollback()
            raise InfrastructureFailure(f"Billing housekeeping failed: {exc}") from exc
        finally:
            session.close()

    def run_pass(self, include_overages: bool = True, include_cleanup: bool = False) -> BillingPassResponse:
        """One full scheduler pass.

        Stale claims are released and missing cycles created before due
        cycles are dispatched, so both are picked up in the same pass.
        """
        released, created = self._housekeeping()
        cycles = self.process_billing_cycles()
        summary = BillingPassResponse(
            run_at=cycles.run_at,
            stale_claims_released=released,
            cycles_created=created,
            cycles=cycles,
        )
        if include_overages:
            self.process_all_overages(summary)
        if include_cleanup:
            cleanup = self.run_cleanup()
            summary.cycles_purged = cleanup.cycles_purged
            summary.notifications_purged = cleanup.notifications_purged
        return summary
