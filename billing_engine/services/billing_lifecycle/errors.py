"""Exception taxonomy for the billing lifecycle engine."""


class BillingEngineError(Exception):
    """Base class for billing engine failures."""


class TransientPaymentFailure(BillingEngineError):
    """Gateway decline or timeout; retried according to the retry policy."""


class PermanentFailure(BillingEngineError):
    """Retries exhausted for a billing cycle."""


class DataIntegrityFailure(BillingEngineError):
    """Subscription, plan or customer configuration is missing.

    Retrying cannot fix missing configuration, so cycles failing this way
    are closed without consuming retry slots.
    """


class InfrastructureFailure(BillingEngineError):
    """Storage or network unavailable while discovering work."""


class InvalidTransitionError(BillingEngineError):
    """Raised when a billing cycle status transition is not allowed."""


class InvoiceStateError(BillingEngineError):
    """Raised when a closed invoice would be modified."""
