"""Recurring billing services.

    from autorenew.services import billing as billing_service
    billing_service.renewals.run_renewal(db, subscriber_id)
    billing_service.reconciler.process_event(db, payload)
"""

from autorenew.services.billing.charges import ChargeExecutor, ChargeOutcome, ChargeResult
from autorenew.services.billing.ledger import BillingLedger
from autorenew.services.billing.notifications import (
    InMemoryNotificationLedger,
    LogNotifier,
    NotificationGate,
    RedisNotificationLedger,
    WhatsAppNotifier,
    get_notification_gate,
    set_notification_gate,
)
from autorenew.services.billing.payment_sources import PaymentSources
from autorenew.services.billing.pending_payments import (
    InMemoryPendingPayments,
    RedisPendingPayments,
    get_pending_payments,
    set_pending_payments,
)
from autorenew.services.billing.plans import SUBSCRIPTION_PLANS, Plan, get_plan
from autorenew.services.billing.reconciler import ReconcileOutcome, WebhookReconciler
from autorenew.services.billing.references import PaymentLinkReference, RecurringReference
from autorenew.services.billing.renewals import Renewals
from autorenew.services.billing.retry_planner import (
    MAX_FAILURES,
    RETRY_OFFSETS_DAYS,
    RetryDecision,
    plan_retry,
)
from autorenew.services.billing.subscriptions import Subscriptions

# Singleton instances for service access
billing_ledger = BillingLedger()
payment_sources = PaymentSources()
subscriptions = Subscriptions()
charge_executor = ChargeExecutor()
renewals = Renewals(executor=charge_executor)
reconciler = WebhookReconciler(renewals=renewals)

__all__ = [
    "BillingLedger",
    "ChargeExecutor",
    "ChargeOutcome",
    "ChargeResult",
    "InMemoryNotificationLedger",
    "InMemoryPendingPayments",
    "LogNotifier",
    "MAX_FAILURES",
    "NotificationGate",
    "PaymentLinkReference",
    "PaymentSources",
    "Plan",
    "RETRY_OFFSETS_DAYS",
    "ReconcileOutcome",
    "RecurringReference",
    "RedisNotificationLedger",
    "RedisPendingPayments",
    "Renewals",
    "RetryDecision",
    "SUBSCRIPTION_PLANS",
    "Subscriptions",
    "WebhookReconciler",
    "WhatsAppNotifier",
    "billing_ledger",
    "charge_executor",
    "get_notification_gate",
    "get_pending_payments",
    "get_plan",
    "payment_sources",
    "plan_retry",
    "reconciler",
    "renewals",
    "set_notification_gate",
    "set_pending_payments",
    "subscriptions",
]
