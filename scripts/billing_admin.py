"""Operator commands for the billing lifecycle engine.

Usage:
    # Run one full billing pass (stale claims, self-heal, cycles, overages)
    python scripts/billing_admin.py run-pass --cleanup

    # Process a single billing cycle
    python scripts/billing_admin.py process-cycle 7f0c1e8a-...

    # Bill pending overages for one tenant
    python scripts/billing_admin.py process-overages tenant-42

    # Show cycles that are due right now
    python scripts/billing_admin.py list-due

    # Purge terminal cycles and sent notifications past retention
    python scripts/billing_admin.py cleanup

    # Billing report for one tenant over a date range
    python scripts/billing_admin.py report tenant-42 --start 2024-01-01 --end 2024-01-31

    # Void an overage invoice the gateway confirmed it never captured
    python scripts/billing_admin.py void-overage-invoice 3c9d2b1e-...
"""

import argparse
import json
import sys
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv


def _parse_date(value):
    return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Billing lifecycle engine admin tool.")
    sub = parser.add_subparsers(dest="command", required=True)

    run_pass = sub.add_parser("run-pass", help="Run one full billing pass")
    run_pass.add_argument(
        "--skip-overages", action="store_true", help="Do not bill pending overages"
    )
    run_pass.add_argument(
        "--cleanup", action="store_true", help="Also purge records past retention"
    )

    cycle = sub.add_parser("process-cycle", help="Process one billing cycle")
    cycle.add_argument("cycle_id")

    overages = sub.add_parser("process-overages", help="Bill one tenant's pending overages")
    overages.add_argument("tenant_id")

    sub.add_parser("list-due", help="List billing cycles due for processing")
    sub.add_parser("cleanup", help="Purge terminal records past retention")

    report = sub.add_parser("report", help="Billing report for one tenant")
    report.add_argument("tenant_id")
    report.add_argument("--start", required=True, type=_parse_date, help="YYYY-MM-DD")
    report.add_argument("--end", required=True, type=_parse_date, help="YYYY-MM-DD, inclusive")

    void = sub.add_parser(
        "void-overage-invoice", help="Void an uncaptured overage invoice"
    )
    void.add_argument("invoice_id")
    void.add_argument("--memo", default=None)
    return parser.parse_args(argv)


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)

    from billing_engine.db import SessionLocal
    from billing_engine.services import billing_lifecycle

    dispatcher = billing_lifecycle.dispatcher

    if args.command == "run-pass":
        summary = dispatcher.run_pass(
            include_overages=not args.skip_overages, include_cleanup=args.cleanup
        )
        print(json.dumps(summary.model_dump(mode="json"), indent=2))
        return 0 if summary.cycles.cycles_failed == 0 else 1

    if args.command == "process-cycle":
        result = dispatcher.process_billing_cycle(args.cycle_id)
        print(f"Cycle {result.cycle_id}: {result.outcome}")
        if result.error:
            print(f"  reason: {result.error}")
        if result.next_retry_at:
            print(f"  next retry: {result.next_retry_at.isoformat()}")
        return 0

    if args.command == "process-overages":
        result = dispatcher.process_overage_billing(args.tenant_id)
        print(f"Tenant {result.tenant_id}: {result.outcome} ({result.rows} overage rows)")
        if result.error:
            print(f"  reason: {result.error}")
        return 0 if result.outcome != "failed" else 1

    if args.command == "list-due":
        db = SessionLocal()
        try:
            cycle_ids = billing_lifecycle.list_due_cycle_ids(
                db,
                datetime.now(timezone.utc),
                dispatcher.processor.retry_policy.max_retries,
                dispatcher.batch_size,
            )
        finally:
            db.close()
        print(f"Found {len(cycle_ids)} due billing cycles")
        for cycle_id in cycle_ids:
            print(f"  {cycle_id}")
        return 0

    if args.command == "cleanup":
        result = dispatcher.run_cleanup()
        print(
            f"Removed {result.cycles_purged} billing cycles and "
            f"{result.notifications_purged} notifications"
        )
        return 0

    if args.command == "report":
        db = SessionLocal()
        try:
            end = args.end + timedelta(days=1) - timedelta(microseconds=1)
            report = billing_lifecycle.reports.generate(db, args.tenant_id, args.start, end)
        finally:
            db.close()
        print(json.dumps(report.model_dump(mode="json"), indent=2))
        return 0

    if args.command == "void-overage-invoice":
        db = SessionLocal()
        try:
            invoice = billing_lifecycle.OverageBiller.void_invoice(
                db, args.invoice_id, memo=args.memo
            )
            invoice_number = invoice.invoice_number
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        print(f"Voided invoice {invoice_number}")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
