"""Renewal and retry driver.

Runs the initial charge for a due subscription and each scheduled retry,
then applies what a failed charge means for the subscriber: a "retry
scheduled" notice, or, once the retry budget is spent, auto-renew switched
off with a single cancellation notice.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from autorenew.models.billing import BillingAttempt
from autorenew.services.billing import messages
from autorenew.services.billing.charges import ChargeExecutor, ChargeResult
from autorenew.services.billing.exceptions import NoPaymentMethod
from autorenew.services.billing.ledger import BillingLedger
from autorenew.services.billing.notifications import (
    NotificationGate,
    get_notification_gate,
    notify,
)
from autorenew.services.billing.retry_planner import RetryDecision
from autorenew.services.billing.subscriptions import Subscriptions
from autorenew.services.common import as_utc, utc_now

logger = logging.getLogger(__name__)


def cancellation_notice_key(attempt: BillingAttempt) -> str:
    return f"auto-renew-cancelled:{attempt.id}"


class Renewals:
    def __init__(
        self,
        executor: ChargeExecutor | None = None,
        gate: NotificationGate | None = None,
    ):
        self._gate = gate
        self.executor = executor or ChargeExecutor(gate)

    @property
    def gate(self) -> NotificationGate:
        return self._gate or get_notification_gate()

    def run_renewal(
        self, db: Session, subscriber_id: str, now: datetime | None = None
    ) -> ChargeResult | None:
        """Initial charge for a subscription whose billing date has arrived.

        Raises:
            NoPaymentMethod: the subscriber must tokenize a card again.
        """
        now = now or utc_now()
        subscription = Subscriptions.find(db, subscriber_id)
        if not subscription or not Subscriptions.is_due(subscription, now):
            logger.info("renewal_skipped subscriber_id=%s reason=not_due", subscriber_id)
            return None
        # a pending charge or a scheduled retry already owns this cycle
        open_attempt = Subscriptions.open_renewal_attempt(db, subscription)
        if open_attempt:
            logger.info(
                "renewal_skipped subscriber_id=%s reason=attempt_open attempt_id=%s status=%s",
                subscriber_id,
                open_attempt.id,
                open_attempt.status.value,
            )
            return None
        result = self.executor.charge(
            db, subscriber_id, subscription.plan_id, prior_failures=0, now=now
        )
        self._after_charge(db, result, now)
        return result

    def retry_attempt(
        self, db: Session, attempt_id: str, now: datetime | None = None
    ) -> ChargeResult | None:
        """Execute the retry scheduled on a failed attempt, at most once."""
        now = now or utc_now()
        attempt = BillingLedger.get(db, attempt_id)
        if not BillingLedger.claim_retry(db, attempt, now):
            return None

        subscription = Subscriptions.find(db, attempt.subscriber_id)
        if not subscription or not subscription.auto_renew:
            logger.info(
                "retry_skipped attempt_id=%s subscriber_id=%s reason=auto_renew_off",
                attempt.id,
                attempt.subscriber_id,
            )
            return None
        if not Subscriptions.is_due(subscription, now):
            logger.info(
                "retry_skipped attempt_id=%s subscriber_id=%s reason=already_renewed",
                attempt.id,
                attempt.subscriber_id,
            )
            return None

        try:
            result = self.executor.charge(
                db,
                attempt.subscriber_id,
                attempt.plan_id,
                prior_failures=attempt.retry_count,
                now=now,
            )
        except NoPaymentMethod:
            logger.warning(
                "retry_abandoned attempt_id=%s subscriber_id=%s reason=no_payment_method",
                attempt.id,
                attempt.subscriber_id,
            )
            return None
        self._after_charge(db, result, now)
        return result

    def refresh_pending(
        self, db: Session, attempt_id: str, now: datetime | None = None
    ) -> ChargeResult:
        now = now or utc_now()
        attempt = BillingLedger.get(db, attempt_id)
        result = self.executor.refresh_pending(db, attempt, now=now)
        self._after_charge(db, result, now)
        return result

    def _after_charge(self, db: Session, result: ChargeResult, now: datetime) -> None:
        if result.failed and result.applied and result.decision is not None:
            self.apply_failure_consequences(db, result.attempt, result.decision, now)

    def apply_failure_consequences(
        self,
        db: Session,
        attempt: BillingAttempt,
        decision: RetryDecision,
        now: datetime | None = None,
    ) -> None:
        """Notify a failed charge, disabling auto-renew once retries run out."""
        now = now or utc_now()
        subscription = Subscriptions.find(db, attempt.subscriber_id)
        language = subscription.language if subscription else None

        if decision.exhausted:
            Subscriptions.mark_retries_exhausted(db, attempt.subscriber_id, now)
            paid_until = as_utc(subscription.next_billing_date) if subscription else None
            notify(
                self.gate,
                cancellation_notice_key(attempt),
                attempt.subscriber_id,
                messages.render(
                    "renewal_cancelled",
                    language,
                    until=(paid_until or now).date().isoformat(),
                ),
            )
            return

        notify(
            self.gate,
            attempt.gateway_transaction_id or attempt.reference,
            attempt.subscriber_id,
            messages.render("retry_scheduled", language, days=decision.delay_days),
        )
