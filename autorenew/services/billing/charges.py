"""Synchronous recurring charges against a stored payment source."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from autorenew.config import settings
from autorenew.metrics import CHARGE_OUTCOMES
from autorenew.models.billing import BillingAttempt, BillingAttemptStatus
from autorenew.services import wompi
from autorenew.services.billing import messages
from autorenew.services.billing.exceptions import GatewayError
from autorenew.services.billing.ledger import BillingLedger
from autorenew.services.billing.notifications import (
    NotificationGate,
    get_notification_gate,
    notify,
)
from autorenew.services.billing.payment_sources import PaymentSources
from autorenew.services.billing.plans import Plan, get_plan
from autorenew.services.billing.references import RecurringReference
from autorenew.services.billing.retry_planner import RetryDecision, plan_retry
from autorenew.services.billing.subscriptions import Subscriptions
from autorenew.services.common import utc_now

logger = logging.getLogger(__name__)


class ChargeOutcome(enum.Enum):
    approved = "approved"
    declined = "declined"
    error = "error"
    pending = "pending"


_FAILURE_OUTCOMES = {
    BillingAttemptStatus.declined: ChargeOutcome.declined,
    BillingAttemptStatus.error: ChargeOutcome.error,
}


@dataclass
class ChargeResult:
    outcome: ChargeOutcome
    attempt: BillingAttempt
    decision: RetryDecision | None = None
    applied: bool = False

    @property
    def failed(self) -> bool:
        return self.outcome in (ChargeOutcome.declined, ChargeOutcome.error)


def gateway_failure_status(gateway_status: str) -> BillingAttemptStatus:
    if gateway_status == wompi.ERROR:
        return BillingAttemptStatus.error
    return BillingAttemptStatus.declined


class ChargeExecutor:
    def __init__(self, gate: NotificationGate | None = None):
        self._gate = gate

    @property
    def gate(self) -> NotificationGate:
        return self._gate or get_notification_gate()

    def charge(
        self,
        db: Session,
        subscriber_id: str,
        plan_id: str,
        *,
        prior_failures: int = 0,
        now: datetime | None = None,
    ) -> ChargeResult:
        """Charge the subscriber's active card for one billing period.

        Raises:
            UnknownPlan: ``plan_id`` is not in the catalog.
            NoPaymentMethod: no active payment source; no attempt is recorded.
        """
        now = now or utc_now()
        plan = get_plan(plan_id)
        source = PaymentSources.require_active(db, subscriber_id)
        reference = RecurringReference.new(plan.id, subscriber_id, now=now)
        attempt = BillingLedger.create_pending(
            db,
            subscriber_id=subscriber_id,
            plan_id=plan.id,
            amount=plan.price,
            currency=settings.billing_currency,
            reference=reference.to_wire(),
            retry_count=prior_failures,
        )
        logger.info(
            "recurring_charge_started subscriber_id=%s plan_id=%s reference=%s",
            subscriber_id,
            plan.id,
            attempt.reference,
        )
        try:
            transaction = wompi.create_transaction(
                amount_in_cents=plan.amount_in_cents,
                currency=settings.billing_currency,
                customer_email=source.customer_email
                or wompi.customer_email_for(subscriber_id),
                reference=attempt.reference,
                payment_source_id=source.gateway_source_id,
            )
        except GatewayError as exc:
            # timeouts and transport failures settle as "error"; a late
            # webhook approval can still win while the retry is scheduled
            return self._record_failure(
                db,
                attempt,
                BillingAttemptStatus.error,
                error_detail=f"{exc.code}: {exc.message}",
                transaction_id=None,
                now=now,
            )
        return self.settle(db, attempt, transaction, plan=plan, now=now)

    def settle(
        self,
        db: Session,
        attempt: BillingAttempt,
        transaction: dict,
        *,
        plan: Plan | None = None,
        now: datetime | None = None,
    ) -> ChargeResult:
        """Apply a gateway transaction payload to a pending attempt."""
        now = now or utc_now()
        plan = plan or get_plan(attempt.plan_id)
        transaction_id = str(transaction["id"]) if transaction.get("id") else None
        status = str(transaction.get("status") or "").upper()

        if status == wompi.APPROVED:
            return self._approve(db, attempt, plan, transaction_id, now)
        if status in (wompi.DECLINED, wompi.VOIDED, wompi.ERROR):
            return self._record_failure(
                db,
                attempt,
                gateway_failure_status(status),
                error_detail=transaction.get("status_message") or status,
                transaction_id=transaction_id,
                now=now,
            )

        BillingLedger.record_transaction_id(db, attempt, transaction_id)
        CHARGE_OUTCOMES.labels(outcome="pending").inc()
        logger.info(
            "recurring_charge_pending attempt_id=%s transaction_id=%s status=%s",
            attempt.id,
            transaction_id,
            status or "unknown",
        )
        return ChargeResult(outcome=ChargeOutcome.pending, attempt=attempt)

    def refresh_pending(
        self, db: Session, attempt: BillingAttempt, now: datetime | None = None
    ) -> ChargeResult:
        """Poll the gateway for an attempt still waiting on its outcome."""
        if attempt.status != BillingAttemptStatus.pending:
            return ChargeResult(
                outcome=ChargeOutcome(attempt.status.value), attempt=attempt
            )
        if not attempt.gateway_transaction_id:
            logger.info("recurring_charge_refresh_skipped attempt_id=%s reason=no_transaction", attempt.id)
            return ChargeResult(outcome=ChargeOutcome.pending, attempt=attempt)
        transaction = wompi.get_transaction(attempt.gateway_transaction_id)
        return self.settle(db, attempt, transaction, now=now)

    def _approve(
        self,
        db: Session,
        attempt: BillingAttempt,
        plan: Plan,
        transaction_id: str | None,
        now: datetime,
    ) -> ChargeResult:
        applied = BillingLedger.mark_approved(db, attempt, transaction_id=transaction_id)
        CHARGE_OUTCOMES.labels(outcome="approved").inc()
        if not applied:
            # webhook got there first and already extended and notified
            return ChargeResult(outcome=ChargeOutcome.approved, attempt=attempt)

        subscription = Subscriptions.extend(db, attempt.subscriber_id, plan.id, now=now)
        notify(
            self.gate,
            attempt.gateway_transaction_id or attempt.reference,
            attempt.subscriber_id,
            messages.render(
                "renewal_success", subscription.language, plan_name=plan.name
            ),
        )
        return ChargeResult(outcome=ChargeOutcome.approved, attempt=attempt, applied=True)

    def _record_failure(
        self,
        db: Session,
        attempt: BillingAttempt,
        status: BillingAttemptStatus,
        *,
        error_detail: str | None,
        transaction_id: str | None,
        now: datetime,
    ) -> ChargeResult:
        decision = plan_retry(attempt.retry_count, status, now)
        applied = BillingLedger.record_failure(
            db,
            attempt,
            status=status,
            decision=decision,
            error_detail=error_detail,
            transaction_id=transaction_id,
        )
        CHARGE_OUTCOMES.labels(outcome=status.value).inc()
        if not applied:
            return ChargeResult(outcome=ChargeOutcome(attempt.status.value), attempt=attempt)
        return ChargeResult(
            outcome=_FAILURE_OUTCOMES[status],
            attempt=attempt,
            decision=decision,
            applied=True,
        )
