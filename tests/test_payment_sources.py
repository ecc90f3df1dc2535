"""Tests for stored payment sources."""

from unittest.mock import patch

import pytest

from autorenew.models.billing import PaymentSourceStatus
from autorenew.services.billing.exceptions import (
    GatewayError,
    NoPaymentMethod,
    TokenizationError,
)
from autorenew.services.billing.payment_sources import PaymentSources

ACCEPTANCE = {"acceptance_token": "acc_tok", "permalink": "https://wompi.co/terms.pdf"}


class TestStore:
    def test_one_active_source_per_subscriber(self, db_session, subscriber_id, payment_source):
        replacement = PaymentSources.store(
            db_session,
            subscriber_id=subscriber_id,
            gateway_source_id="4001",
            card_last_four="1111",
        )
        db_session.refresh(payment_source)
        assert payment_source.status == PaymentSourceStatus.cancelled
        assert payment_source.cancelled_at is not None
        assert PaymentSources.get_active(db_session, subscriber_id).id == replacement.id

    def test_require_active_raises_without_source(self, db_session, subscriber_id):
        with pytest.raises(NoPaymentMethod):
            PaymentSources.require_active(db_session, subscriber_id)


class TestCreateFromToken:
    def test_exchanges_token_for_source(self, db_session, subscriber_id):
        with (
            patch(
                "autorenew.services.wompi.get_acceptance_token", return_value=ACCEPTANCE
            ),
            patch(
                "autorenew.services.wompi.create_payment_source",
                return_value={
                    "id": 3891,
                    "status": "AVAILABLE",
                    "public_data": {"type": "CARD", "last_four": "4242"},
                },
            ) as create_source,
        ):
            source = PaymentSources.create_from_token(
                db_session, subscriber_id, "tok_test_123", {"brand": "VISA"}
            )

        assert source.gateway_source_id == "3891"
        assert source.card_brand == "VISA"
        assert source.card_last_four == "4242"
        assert source.customer_email == f"{subscriber_id}@monedita.app"
        kwargs = create_source.call_args.kwargs
        assert kwargs["token"] == "tok_test_123"
        assert kwargs["acceptance_token"] == "acc_tok"

    def test_gateway_failure_becomes_tokenization_error(self, db_session, subscriber_id):
        with (
            patch(
                "autorenew.services.wompi.get_acceptance_token", return_value=ACCEPTANCE
            ),
            patch(
                "autorenew.services.wompi.create_payment_source",
                side_effect=GatewayError("Wompi returned HTTP 422"),
            ),
        ):
            with pytest.raises(TokenizationError):
                PaymentSources.create_from_token(db_session, subscriber_id, "tok_bad")
        assert PaymentSources.get_active(db_session, subscriber_id) is None

    def test_missing_token_rejected(self, db_session, subscriber_id):
        with pytest.raises(TokenizationError):
            PaymentSources.create_from_token(db_session, subscriber_id, "")

    def test_missing_source_id_rejected(self, db_session, subscriber_id):
        with (
            patch(
                "autorenew.services.wompi.get_acceptance_token", return_value=ACCEPTANCE
            ),
            patch(
                "autorenew.services.wompi.create_payment_source",
                return_value={"status": "PENDING"},
            ),
        ):
            with pytest.raises(TokenizationError):
                PaymentSources.create_from_token(db_session, subscriber_id, "tok_x")


class TestCancelReactivate:
    def test_cancel_then_reactivate(self, db_session, subscriber_id, payment_source):
        cancelled = PaymentSources.cancel(db_session, subscriber_id)
        assert cancelled.status == PaymentSourceStatus.cancelled
        assert PaymentSources.get_active(db_session, subscriber_id) is None

        reactivated = PaymentSources.reactivate(db_session, subscriber_id)
        assert reactivated.id == payment_source.id
        assert reactivated.status == PaymentSourceStatus.active
        assert reactivated.cancelled_at is None

    def test_cancel_without_source_is_noop(self, db_session, subscriber_id):
        assert PaymentSources.cancel(db_session, subscriber_id) is None

    def test_reactivate_without_any_source(self, db_session, subscriber_id):
        with pytest.raises(NoPaymentMethod):
            PaymentSources.reactivate(db_session, subscriber_id)
