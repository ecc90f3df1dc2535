from autorenew.models.billing import (  # noqa: F401
    BillingAttempt,
    BillingAttemptStatus,
    PaymentSource,
    PaymentSourceStatus,
    Subscription,
)
