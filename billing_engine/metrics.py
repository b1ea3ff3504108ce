from prometheus_client import Counter, Histogram

BILLING_CYCLE_OUTCOMES = Counter(
    "billing_cycle_outcomes_total",
    "Billing cycle processing outcomes",
    ["outcome"],
)
PAYMENT_ATTEMPTS = Counter(
    "billing_payment_attempts_total",
    "Payment gateway attempts",
    ["purpose", "result"],
)
OVERAGE_INVOICES = Counter(
    "billing_overage_invoices_total",
    "Supplemental overage invoice outcomes",
    ["result"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_cycle_outcome(outcome: str) -> None:
    BILLING_CYCLE_OUTCOMES.labels(outcome=outcome).inc()


def record_payment_attempt(purpose: str, result: str) -> None:
    PAYMENT_ATTEMPTS.labels(purpose=purpose, result=result).inc()


def record_overage_invoice(result: str) -> None:
    OVERAGE_INVOICES.labels(result=result).inc()
