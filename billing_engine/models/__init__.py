from billing_engine.models.billing import (  # noqa: F401
    Invoice,
    InvoiceKind,
    InvoiceLine,
    InvoiceLineType,
    InvoiceStatus,
    OverageBilling,
    OverageStatus,
)
from billing_engine.models.billing_cycle import (  # noqa: F401
    ACTIVE_CYCLE_STATUSES,
    TERMINAL_CYCLE_STATUSES,
    BillingCycle,
    BillingCycleStatus,
    FailureKind,
)
from billing_engine.models.notification import (  # noqa: F401
    BillingNotificationType,
    ScheduledNotification,
)
from billing_engine.models.subscription import (  # noqa: F401
    BillingInterval,
    SubscriptionStatus,
    TenantSubscription,
)
