"""Asynchronous gateway event reconciliation.

Webhook events may arrive before, after or concurrently with the synchronous
charge response for the same transaction, and may be delivered more than
once. The reconciler never applies an outcome blindly: it finds the matching
ledger entry, no-ops when the entry already reflects the event, and otherwise
goes through the ledger's compare-and-set transitions. Side effects
(extension, notices) only follow a transition this call actually applied.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from autorenew.metrics import WEBHOOK_OUTCOMES
from autorenew.models.billing import (
    FAILED_STATUSES,
    BillingAttempt,
    BillingAttemptStatus,
)
from autorenew.services import wompi
from autorenew.services.billing import messages
from autorenew.services.billing.charges import gateway_failure_status
from autorenew.services.billing.exceptions import (
    ReferenceFormatError,
    TokenizationError,
    UnknownPlan,
)
from autorenew.services.billing.ledger import BillingLedger
from autorenew.services.billing.notifications import (
    NotificationGate,
    get_notification_gate,
    notify,
)
from autorenew.services.billing.payment_sources import PaymentSources
from autorenew.services.billing.pending_payments import get_pending_payments
from autorenew.services.billing.plans import get_plan
from autorenew.services.billing.references import RecurringReference
from autorenew.services.billing.renewals import Renewals
from autorenew.services.billing.retry_planner import plan_retry
from autorenew.services.billing.subscriptions import Subscriptions
from autorenew.services.common import utc_now

logger = logging.getLogger(__name__)

TRANSACTION_UPDATED = "transaction.updated"


class ReconcileOutcome(enum.Enum):
    applied = "applied"
    duplicate = "duplicate"
    ignored = "ignored"
    unmatched = "unmatched"
    malformed = "malformed"
    first_payment = "first_payment"


class WebhookReconciler:
    def __init__(
        self,
        gate: NotificationGate | None = None,
        renewals: Renewals | None = None,
        pending_payments=None,
    ):
        self._gate = gate
        self.renewals = renewals or Renewals(gate=gate)
        self._pending_payments = pending_payments

    @property
    def gate(self) -> NotificationGate:
        return self._gate or get_notification_gate()

    @property
    def pending_payments(self):
        return self._pending_payments or get_pending_payments()

    def process_event(
        self, db: Session, payload: dict[str, Any], now: datetime | None = None
    ) -> ReconcileOutcome:
        outcome = self._process(db, payload, now or utc_now())
        WEBHOOK_OUTCOMES.labels(outcome=outcome.value).inc()
        return outcome

    def _process(self, db: Session, payload: dict[str, Any], now: datetime) -> ReconcileOutcome:
        event = payload.get("event")
        if event != TRANSACTION_UPDATED:
            logger.info("webhook_ignored event=%s", event)
            return ReconcileOutcome.ignored

        data = payload.get("data")
        transaction = data.get("transaction") if isinstance(data, dict) else None
        if not isinstance(transaction, dict):
            logger.warning("webhook_malformed reason=missing_transaction")
            return ReconcileOutcome.malformed

        transaction_id = str(transaction["id"]) if transaction.get("id") else None
        status = str(transaction.get("status") or "").upper()
        reference = transaction.get("reference")
        payment_link_id = transaction.get("payment_link_id")

        if status not in wompi.FINAL_STATUSES:
            logger.info(
                "webhook_ignored transaction_id=%s status=%s reason=non_final",
                transaction_id,
                status or "unknown",
            )
            return ReconcileOutcome.ignored

        pending = self.pending_payments.consume(payment_link_id, now=now)
        if pending:
            try:
                return self._first_payment(db, pending, transaction, transaction_id, status, now)
            except Exception:
                # keep the link claimable so the gateway redelivery can finish the job
                self.pending_payments.register(
                    payment_link_id,
                    pending["subscriber_id"],
                    pending["plan_id"],
                    now=pending["created_at"],
                )
                raise

        try:
            parsed = RecurringReference.parse(reference)
        except ReferenceFormatError:
            if payment_link_id:
                logger.info(
                    "webhook_unmatched transaction_id=%s payment_link_id=%s reason=no_pending_payment",
                    transaction_id,
                    payment_link_id,
                )
                return ReconcileOutcome.unmatched
            logger.warning(
                "webhook_malformed transaction_id=%s reference=%s", transaction_id, reference
            )
            return ReconcileOutcome.malformed

        attempt = BillingLedger.find_for_transaction(
            db,
            transaction_id=transaction_id,
            reference=reference,
            subscriber_id=parsed.subscriber_id,
            plan_id=parsed.plan_id,
        )
        if not attempt:
            logger.warning(
                "webhook_unmatched transaction_id=%s reference=%s subscriber_id=%s",
                transaction_id,
                reference,
                parsed.subscriber_id,
            )
            return ReconcileOutcome.unmatched

        if status == wompi.APPROVED:
            return self._approved(db, attempt, transaction_id, now)
        return self._failed(db, attempt, transaction, transaction_id, status, now)

    def _approved(
        self,
        db: Session,
        attempt: BillingAttempt,
        transaction_id: str | None,
        now: datetime,
    ) -> ReconcileOutcome:
        if attempt.status == BillingAttemptStatus.approved:
            logger.info(
                "webhook_duplicate attempt_id=%s transaction_id=%s status=approved",
                attempt.id,
                transaction_id,
            )
            return ReconcileOutcome.duplicate

        if not BillingLedger.mark_approved(db, attempt, transaction_id=transaction_id):
            if attempt.status == BillingAttemptStatus.approved:
                return ReconcileOutcome.duplicate
            logger.error(
                "webhook_late_approval_rejected attempt_id=%s transaction_id=%s status=%s "
                "reason=attempt_final",
                attempt.id,
                transaction_id,
                attempt.status.value,
            )
            return ReconcileOutcome.ignored

        plan = get_plan(attempt.plan_id)
        subscription = Subscriptions.extend(db, attempt.subscriber_id, plan.id, now=now)
        notify(
            self.gate,
            attempt.gateway_transaction_id or attempt.reference,
            attempt.subscriber_id,
            messages.render("renewal_success", subscription.language, plan_name=plan.name),
        )
        return ReconcileOutcome.applied

    def _failed(
        self,
        db: Session,
        attempt: BillingAttempt,
        transaction: dict[str, Any],
        transaction_id: str | None,
        status: str,
        now: datetime,
    ) -> ReconcileOutcome:
        if attempt.status in FAILED_STATUSES:
            logger.info(
                "webhook_duplicate attempt_id=%s transaction_id=%s status=%s",
                attempt.id,
                transaction_id,
                attempt.status.value,
            )
            return ReconcileOutcome.duplicate
        if attempt.status == BillingAttemptStatus.approved:
            logger.warning(
                "webhook_conflict attempt_id=%s transaction_id=%s incoming=%s current=approved",
                attempt.id,
                transaction_id,
                status,
            )
            return ReconcileOutcome.ignored

        failure_status = gateway_failure_status(status)
        decision = plan_retry(attempt.retry_count, failure_status, now)
        applied = BillingLedger.record_failure(
            db,
            attempt,
            status=failure_status,
            decision=decision,
            error_detail=transaction.get("status_message") or f"webhook: {status}",
            transaction_id=transaction_id,
        )
        if not applied:
            return (
                ReconcileOutcome.duplicate
                if attempt.status in FAILED_STATUSES
                else ReconcileOutcome.ignored
            )
        self.renewals.apply_failure_consequences(db, attempt, decision, now)
        return ReconcileOutcome.applied

    def _first_payment(
        self,
        db: Session,
        pending: dict[str, Any],
        transaction: dict[str, Any],
        transaction_id: str | None,
        status: str,
        now: datetime,
    ) -> ReconcileOutcome:
        subscriber_id = pending["subscriber_id"]
        try:
            plan = get_plan(pending["plan_id"])
        except UnknownPlan:
            logger.error(
                "first_payment_unknown_plan subscriber_id=%s plan_id=%s",
                subscriber_id,
                pending["plan_id"],
            )
            return ReconcileOutcome.ignored
        key = transaction_id or f"payment-link:{transaction.get('payment_link_id')}"
        subscription = Subscriptions.get_or_create(db, subscriber_id)

        if status != wompi.APPROVED:
            logger.info(
                "first_payment_failed subscriber_id=%s transaction_id=%s status=%s",
                subscriber_id,
                transaction_id,
                status,
            )
            notify(
                self.gate,
                key,
                subscriber_id,
                messages.render("payment_failed", subscription.language, status=status),
            )
            return ReconcileOutcome.first_payment

        source = self._store_card(db, subscriber_id, transaction.get("payment_method"))
        Subscriptions.activate_plan(
            db, subscriber_id, plan.id, auto_renew=source is not None, now=now
        )
        logger.info(
            "first_payment_applied subscriber_id=%s plan_id=%s transaction_id=%s auto_renew=%s",
            subscriber_id,
            plan.id,
            transaction_id,
            source is not None,
        )
        notify(
            self.gate,
            key,
            subscriber_id,
            messages.render("payment_success", subscription.language, plan_name=plan.name),
        )
        return ReconcileOutcome.first_payment

    @staticmethod
    def _store_card(db: Session, subscriber_id: str, payment_method: Any):
        if not isinstance(payment_method, dict) or payment_method.get("type") != "CARD":
            return None
        extra = payment_method.get("extra") or {}
        card_token = extra.get("card_token")
        if not card_token:
            return None
        try:
            return PaymentSources.create_from_token(
                db,
                subscriber_id,
                card_token,
                {"brand": extra.get("brand"), "last_four": extra.get("last_four")},
            )
        except TokenizationError as exc:
            logger.warning(
                "first_payment_card_not_stored subscriber_id=%s error=%s",
                subscriber_id,
                exc.message,
            )
            return None
