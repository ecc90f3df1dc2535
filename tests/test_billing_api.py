"""Route tests for the webhook, subscribe and internal billing APIs."""

import hashlib
from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from autorenew.api.subscribe import limiter as subscribe_limiter
from autorenew.config import settings
from autorenew.db import get_db
from autorenew.main import app
from autorenew.models.billing import BillingAttemptStatus
from autorenew.services import api_billing_webhooks
from autorenew.services import billing as billing_service
from autorenew.services.billing.charges import ChargeExecutor
from autorenew.services.billing.ledger import BillingLedger
from autorenew.services.billing.retry_planner import plan_retry
from autorenew.services.subscribe_tokens import issue_subscribe_token
from tests.mocks import signed_webhook, webhook_event, wompi_transaction

CREATE_TRANSACTION = "autorenew.services.wompi.create_transaction"
INTERNAL = {"X-Internal-Key": "test-internal-key"}


@pytest.fixture()
def client(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    subscribe_limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def token(subscriber_id):
    return issue_subscribe_token(subscriber_id, "basic")


@pytest.fixture()
def pending_attempt(db_session, subscriber_id, payment_source, due_subscription, now):
    with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-700", "PENDING")):
        return ChargeExecutor().charge(db_session, subscriber_id, "basic", now=now).attempt


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_metrics_exposed(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "billing_webhook_outcomes_total" in response.text


# =============================================================================
# Webhook
# =============================================================================


class TestWompiWebhook:
    def test_valid_event_is_applied(self, client, db_session, pending_attempt):
        event = webhook_event(
            wompi_transaction("tx-700", "APPROVED", reference=pending_attempt.reference)
        )
        body, headers = signed_webhook(event, settings.wompi_events_secret)

        response = client.post("/webhooks/wompi", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "outcome": "applied"}
        db_session.refresh(pending_attempt)
        assert pending_attempt.status == BillingAttemptStatus.approved

    def test_bad_signature_rejected_without_mutation(self, client, db_session, pending_attempt):
        event = webhook_event(
            wompi_transaction("tx-700", "APPROVED", reference=pending_attempt.reference)
        )
        body, headers = signed_webhook(event, "wrong-secret")

        response = client.post("/webhooks/wompi", content=body, headers=headers)

        assert response.status_code == 401
        db_session.refresh(pending_attempt)
        assert pending_attempt.status == BillingAttemptStatus.pending

    def test_missing_signature_headers(self, client):
        response = client.post("/webhooks/wompi", content=b"{}")
        assert response.status_code == 401

    def test_invalid_json(self, client):
        body = b"not json"
        timestamp = "1772366400"
        headers = {
            "X-Event-Timestamp": timestamp,
            "X-Event-Checksum": hashlib.sha256(
                timestamp.encode() + body + settings.wompi_events_secret.encode()
            ).hexdigest(),
        }
        response = client.post("/webhooks/wompi", content=body, headers=headers)
        assert response.status_code == 400

    def test_ignored_event_still_acknowledged(self, client):
        body, headers = signed_webhook(
            {"event": "nequi_token.updated", "data": {}}, settings.wompi_events_secret
        )
        response = client.post("/webhooks/wompi", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"


def test_processing_failure_returns_500(db_session):
    body, headers = signed_webhook(
        webhook_event(wompi_transaction("tx-1", "APPROVED", reference="x")),
        settings.wompi_events_secret,
    )
    with patch.object(
        billing_service.reconciler, "process_event", side_effect=RuntimeError("db down")
    ):
        response = api_billing_webhooks.process_wompi_webhook(
            db=db_session,
            body=body,
            checksum=headers["X-Event-Checksum"],
            timestamp=headers["X-Event-Timestamp"],
        )
    assert response.status_code == 500


# =============================================================================
# Subscribe API
# =============================================================================


class TestSubscribeApi:
    def test_requires_token(self, client):
        response = client.get("/api/subscribe/status")
        assert response.status_code == 401
        assert response.json()["code"] == "authentication_failed"

    def test_page_config(self, client, token):
        with patch(
            "autorenew.services.wompi.get_acceptance_token",
            return_value={"acceptance_token": "acc", "permalink": "https://wompi.co/t.pdf"},
        ):
            response = client.get("/api/subscribe", params={"token": token})
        assert response.status_code == 200
        body = response.json()
        assert body["plan"]["id"] == "basic"
        assert body["amount_in_cents"] == 1200000

    def test_tokenize_with_bearer(self, client, token, subscriber_id):
        with (
            patch(
                "autorenew.services.wompi.get_acceptance_token",
                return_value={"acceptance_token": "acc", "permalink": ""},
            ),
            patch(
                "autorenew.services.wompi.create_payment_source",
                return_value={"id": 42, "public_data": {"type": "CARD", "last_four": "4242"}},
            ),
        ):
            response = client.post(
                "/api/subscribe/tokenize",
                json={"card_token": "tok_1", "card_brand": "VISA"},
                headers={"Authorization": f"Bearer {token}"},
            )
        assert response.status_code == 201
        body = response.json()
        assert body["subscriber_id"] == subscriber_id
        assert body["card_last_four"] == "4242"
        assert body["status"] == "active"

    def test_charge_without_card_conflicts(self, client, token):
        response = client.post("/api/subscribe/charge", params={"token": token})
        assert response.status_code == 409
        assert response.json()["code"] == "no_payment_method"

    def test_charge_approved(self, client, token, payment_source):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-800", "APPROVED")):
            response = client.post("/api/subscribe/charge", params={"token": token})
        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "approved"
        assert body["attempt"]["gateway_transaction_id"] == "tx-800"

    def test_charge_declined(self, client, token, payment_source):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-801", "DECLINED")):
            response = client.post("/api/subscribe/charge", params={"token": token})
        assert response.status_code == 402
        assert response.json()["code"] == "gateway_declined"

    def test_status_cancel_reactivate(
        self, client, token, due_subscription, payment_source, notifier
    ):
        response = client.get("/api/subscribe/status", params={"token": token})
        assert response.status_code == 200
        assert response.json()["auto_renew"] is True

        response = client.post("/api/subscribe/cancel", params={"token": token})
        assert response.status_code == 200
        assert response.json()["auto_renew"] is False
        assert response.json()["card"] is None
        assert len(notifier.sent) == 1

        response = client.post("/api/subscribe/reactivate", params={"token": token})
        assert response.status_code == 200
        assert response.json()["auto_renew"] is True
        assert response.json()["card"]["last_four"] == "4242"

    def test_payment_link(self, client, token, pending_payments, subscriber_id):
        with patch(
            "autorenew.services.wompi.create_payment_link", return_value={"id": "lnk_5"}
        ):
            response = client.post("/api/subscribe/link", params={"token": token})
        assert response.status_code == 201
        assert response.json()["payment_link_id"] == "lnk_5"
        assert pending_payments.consume("lnk_5")["subscriber_id"] == subscriber_id

    def test_write_routes_are_rate_limited(self, client, token):
        statuses = [
            client.post("/api/subscribe/charge", params={"token": token}).status_code
            for _ in range(11)
        ]
        assert statuses[:10] == [409] * 10
        assert statuses[10] == 429


# =============================================================================
# Internal billing API
# =============================================================================


class TestInternalBillingApi:
    def test_requires_internal_key(self, client):
        response = client.get("/api/billing/attempts")
        assert response.status_code == 401
        response = client.get("/api/billing/attempts", headers={"X-Internal-Key": "nope"})
        assert response.status_code == 401

    def test_list_and_get_attempts(self, client, pending_attempt, subscriber_id):
        response = client.get(
            "/api/billing/attempts",
            params={"subscriber_id": subscriber_id},
            headers=INTERNAL,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["items"][0]["status"] == "pending"

        response = client.get(f"/api/billing/attempts/{pending_attempt.id}", headers=INTERNAL)
        assert response.status_code == 200
        assert response.json()["reference"] == pending_attempt.reference

    def test_invalid_status_filter(self, client):
        response = client.get(
            "/api/billing/attempts", params={"status": "bogus"}, headers=INTERNAL
        )
        assert response.status_code == 400

    def test_unknown_attempt(self, client):
        response = client.get(
            "/api/billing/attempts/00000000-0000-0000-0000-000000000000", headers=INTERNAL
        )
        assert response.status_code == 404

    def test_trigger_renewal(self, client, subscriber_id, due_subscription, payment_source):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-900", "DECLINED")):
            response = client.post(
                f"/api/billing/subscriptions/{subscriber_id}/renew", headers=INTERNAL
            )
        assert response.status_code == 200
        body = response.json()
        assert body["executed"] is True
        assert body["result"]["outcome"] == "declined"
        assert body["result"]["decision"]["delay_days"] == 1
        assert body["result"]["decision"]["exhausted"] is False

    def test_trigger_renewal_not_due(self, client, subscriber_id):
        response = client.post(
            f"/api/billing/subscriptions/{subscriber_id}/renew", headers=INTERNAL
        )
        assert response.status_code == 200
        assert response.json() == {"executed": False, "result": None}

    def test_retry_exhausted_attempt_conflicts(self, client, db_session, subscriber_id, now):
        attempt = BillingLedger.create_pending(
            db_session,
            subscriber_id=subscriber_id,
            plan_id="basic",
            amount=12000,
            currency="COP",
            reference="monedita_recurring_basic_573001234567_1",
            retry_count=2,
        )
        BillingLedger.record_failure(
            db_session,
            attempt,
            status=BillingAttemptStatus.declined,
            decision=plan_retry(2, BillingAttemptStatus.declined, now),
        )
        response = client.post(f"/api/billing/attempts/{attempt.id}/retry", headers=INTERNAL)
        assert response.status_code == 409
        assert response.json()["code"] == "max_retries_exceeded"

    def test_retry_not_yet_due(self, client, subscriber_id, due_subscription, payment_source):
        with patch(CREATE_TRANSACTION, return_value=wompi_transaction("tx-901", "DECLINED")):
            renewed = client.post(
                f"/api/billing/subscriptions/{subscriber_id}/renew", headers=INTERNAL
            ).json()
        attempt_id = renewed["result"]["attempt"]["id"]

        response = client.post(f"/api/billing/attempts/{attempt_id}/retry", headers=INTERNAL)
        assert response.status_code == 200
        assert response.json()["executed"] is False

    def test_due_attempts(self, client, db_session, subscriber_id, now):
        attempt = BillingLedger.create_pending(
            db_session,
            subscriber_id=subscriber_id,
            plan_id="basic",
            amount=12000,
            currency="COP",
            reference="monedita_recurring_basic_573001234567_2",
        )
        BillingLedger.record_failure(
            db_session,
            attempt,
            status=BillingAttemptStatus.declined,
            decision=plan_retry(
                0, BillingAttemptStatus.declined, now - timedelta(days=400)
            ),
        )
        response = client.get("/api/billing/attempts/due", headers=INTERNAL)
        assert response.status_code == 200
        assert [item["id"] for item in response.json()] == [str(attempt.id)]

    def test_refresh_pending(self, client, pending_attempt, subscriber_id):
        with patch(
            "autorenew.services.wompi.get_transaction",
            return_value=wompi_transaction("tx-700", "APPROVED"),
        ):
            response = client.post(
                f"/api/billing/attempts/{pending_attempt.id}/refresh", headers=INTERNAL
            )
        assert response.status_code == 200
        assert response.json()["outcome"] == "approved"
        assert response.json()["applied"] is True
