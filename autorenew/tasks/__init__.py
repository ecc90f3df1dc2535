from autorenew.tasks.billing import (
    cleanup_pending_payments,
    renew_subscription,
    retry_billing_attempt,
    sweep_notification_ledger,
)

__all__ = [
    "cleanup_pending_payments",
    "renew_subscription",
    "retry_billing_attempt",
    "sweep_notification_ledger",
]
