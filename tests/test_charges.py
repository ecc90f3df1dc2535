"""Tests for synchronous recurring charges."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from autorenew.models.billing import BillingAttempt, BillingAttemptStatus
from autorenew.services.billing.charges import ChargeExecutor, ChargeOutcome
from autorenew.services.billing.exceptions import NetworkTimeout, NoPaymentMethod, UnknownPlan
from autorenew.services.billing.subscriptions import Subscriptions
from autorenew.services.common import as_utc
from tests.mocks import wompi_transaction

CREATE_TRANSACTION = "autorenew.services.wompi.create_transaction"


@pytest.fixture()
def executor():
    return ChargeExecutor()


class TestCharge:
    def test_approved_extends_and_notifies(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, notifier, now
    ):
        with patch(
            CREATE_TRANSACTION, return_value=wompi_transaction("tx-100", "APPROVED")
        ) as create:
            result = executor.charge(db_session, subscriber_id, "basic", now=now)

        assert result.outcome == ChargeOutcome.approved
        assert result.applied is True
        assert result.attempt.status == BillingAttemptStatus.approved
        assert result.attempt.gateway_transaction_id == "tx-100"

        kwargs = create.call_args.kwargs
        assert kwargs["amount_in_cents"] == 1200000
        assert kwargs["payment_source_id"] == "3891"
        assert kwargs["reference"].startswith("monedita_recurring_basic_573001234567_")

        subscription = Subscriptions.find(db_session, subscriber_id)
        assert as_utc(subscription.next_billing_date) == now + timedelta(days=30)
        assert subscription.auto_renew is True
        assert len(notifier.sent) == 1
        assert "Basic" in notifier.sent[0][1]

    def test_declined_schedules_first_retry(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, now
    ):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-101", "DECLINED")):
            result = executor.charge(db_session, subscriber_id, "basic", now=now)

        assert result.outcome == ChargeOutcome.declined
        assert result.decision.retry_count == 1
        assert result.attempt.retry_count == 1
        assert as_utc(result.attempt.next_retry_at) == now + timedelta(days=1)
        assert result.attempt.error_detail == "declined by issuer"

    def test_voided_counts_as_declined(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, now
    ):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-102", "VOIDED")):
            result = executor.charge(db_session, subscriber_id, "basic", now=now)
        assert result.attempt.status == BillingAttemptStatus.declined

    def test_gateway_error_status(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, now
    ):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-103", "ERROR")):
            result = executor.charge(db_session, subscriber_id, "basic", now=now)
        assert result.outcome == ChargeOutcome.error
        assert result.attempt.status == BillingAttemptStatus.error

    def test_timeout_is_recorded_as_retryable_error(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, now
    ):
        with patch(CREATE_TRANSACTION, side_effect=NetworkTimeout("Wompi request timed out")):
            result = executor.charge(db_session, subscriber_id, "basic", now=now)

        assert result.outcome == ChargeOutcome.error
        assert result.attempt.gateway_transaction_id is None
        assert result.attempt.error_detail.startswith("network_timeout")
        assert as_utc(result.attempt.next_retry_at) == now + timedelta(days=1)

    def test_pending_keeps_attempt_open(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, notifier, now
    ):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-104", "PENDING")):
            result = executor.charge(db_session, subscriber_id, "basic", now=now)

        assert result.outcome == ChargeOutcome.pending
        assert result.attempt.status == BillingAttemptStatus.pending
        assert result.attempt.gateway_transaction_id == "tx-104"
        assert notifier.sent == []

    def test_no_payment_method_records_nothing(self, db_session, executor, subscriber_id, now):
        with patch(CREATE_TRANSACTION) as create:
            with pytest.raises(NoPaymentMethod):
                executor.charge(db_session, subscriber_id, "basic", now=now)
        create.assert_not_called()
        assert db_session.query(BillingAttempt).count() == 0

    def test_unknown_plan(self, db_session, executor, subscriber_id, payment_source, now):
        with pytest.raises(UnknownPlan):
            executor.charge(db_session, subscriber_id, "gold", now=now)

    def test_prior_failures_carry_into_decision(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, now
    ):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-105", "DECLINED")):
            result = executor.charge(
                db_session, subscriber_id, "basic", prior_failures=1, now=now
            )
        assert result.attempt.retry_count == 2
        assert as_utc(result.attempt.next_retry_at) == now + timedelta(days=3)


class TestRefreshPending:
    def test_poll_settles_pending_attempt(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, now
    ):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-200", "PENDING")):
            pending = executor.charge(db_session, subscriber_id, "basic", now=now)

        with patch(
            "autorenew.services.wompi.get_transaction",
            return_value=wompi_transaction("tx-200", "APPROVED"),
        ) as get_transaction:
            result = executor.refresh_pending(db_session, pending.attempt, now=now)

        get_transaction.assert_called_once_with("tx-200")
        assert result.outcome == ChargeOutcome.approved
        assert result.applied is True

    def test_settled_attempt_is_not_polled(
        self, db_session, executor, subscriber_id, payment_source, due_subscription, now
    ):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-201", "DECLINED")):
            declined = executor.charge(db_session, subscriber_id, "basic", now=now)

        with patch("autorenew.services.wompi.get_transaction") as get_transaction:
            result = executor.refresh_pending(db_session, declined.attempt, now=now)

        get_transaction.assert_not_called()
        assert result.outcome == ChargeOutcome.declined
        assert result.applied is False
