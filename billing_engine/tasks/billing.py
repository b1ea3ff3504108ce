import logging
import time
from datetime import datetime, timezone

from billing_engine.celery_app import celery_app
from billing_engine.db import SessionLocal
from billing_engine.metrics import observe_job
from billing_engine.services import billing_lifecycle as billing_lifecycle_service

logger = logging.getLogger(__name__)


@celery_app.task(name="billing_engine.tasks.billing.run_billing_pass")
def run_billing_pass():
    start = time.monotonic()
    status = "success"
    try:
        summary = billing_lifecycle_service.dispatcher.run_pass(include_cleanup=False)
        return summary.model_dump(mode="json")
    except Exception:
        status = "error"
        logger.exception("Billing pass failed")
        raise
    finally:
        observe_job("billing_pass", status, time.monotonic() - start)


@celery_app.task(name="billing_engine.tasks.billing.process_billing_cycle")
def process_billing_cycle(cycle_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        result = billing_lifecycle_service.billing_cycles.process(session, cycle_id)
        if result.skipped:
            status = "skipped"
        return {"cycle_id": str(result.cycle_id), "outcome": result.outcome}
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("billing_cycle", status, time.monotonic() - start)


@celery_app.task(name="billing_engine.tasks.billing.process_overage_billing")
def process_overage_billing(tenant_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        result = billing_lifecycle_service.overage_billing.bill_tenant(session, tenant_id)
        return {"tenant_id": tenant_id, "outcome": result.outcome}
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("overage_billing", status, time.monotonic() - start)


@celery_app.task(name="billing_engine.tasks.billing.cleanup_billing_records")
def cleanup_billing_records():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        result = billing_lifecycle_service.cleanup.run(session, datetime.now(timezone.utc))
        return {
            "cycles_purged": result.cycles_purged,
            "notifications_purged": result.notifications_purged,
        }
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("billing_cleanup", status, time.monotonic() - start)
