"""
Billing Scheduler Package

Periodic driver for billing cycles, payment retries, overage billing and cleanup.
"""
from billing_engine.scheduler.billing_scheduler import BillingCycleScheduler, SchedulerHandle

__all__ = ["BillingCycleScheduler", "SchedulerHandle"]
