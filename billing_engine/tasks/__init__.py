from billing_engine.tasks.billing import (
    cleanup_billing_records,
    process_billing_cycle,
    process_overage_billing,
    run_billing_pass,
)

__all__ = [
    "cleanup_billing_records",
    "process_billing_cycle",
    "process_overage_billing",
    "run_billing_pass",
]
