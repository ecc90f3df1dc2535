"""Subscribe API orchestration: tokenization, first charge and self-service changes."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from autorenew.services import billing as billing_service
from autorenew.services import checkout
from autorenew.services.billing import messages
from autorenew.services.billing.exceptions import GatewayDeclined, GatewayError
from autorenew.services.billing.notifications import notify
from autorenew.services.common import as_utc

logger = logging.getLogger(__name__)


def subscribe_page(subscriber_id: str, plan_id: str) -> dict:
    return checkout.widget_config(subscriber_id, plan_id)


def tokenize(db: Session, subscriber_id: str, card_token: str, card_meta: dict):
    return billing_service.payment_sources.create_from_token(
        db, subscriber_id, card_token, card_meta
    )


def charge_first_period(db: Session, subscriber_id: str, plan_id: str):
    """Charge the stored card right away for the plan the subscriber picked.

    A decline is reported to the caller rather than queued for retries; the
    subscriber is still on the page and can use another card.
    """
    result = billing_service.charge_executor.charge(db, subscriber_id, plan_id)
    if result.failed:
        detail = {
            "attempt_id": str(result.attempt.id),
            "status": result.attempt.status.value,
            "error_detail": result.attempt.error_detail,
        }
        if result.outcome.value == "error":
            raise GatewayError("Payment could not be processed", detail=detail)
        raise GatewayDeclined("Payment was declined", detail=detail)
    return result


def payment_link(subscriber_id: str, plan_id: str) -> dict:
    return checkout.create_payment_link(subscriber_id, plan_id)


def status(db: Session, subscriber_id: str) -> dict:
    return billing_service.subscriptions.status(db, subscriber_id)


def cancel(db: Session, subscriber_id: str) -> dict:
    subscription = billing_service.subscriptions.cancel_auto_renew(db, subscriber_id)
    cancelled_at = as_utc(subscription.cancelled_at)
    paid_until = as_utc(subscription.next_billing_date) or cancelled_at
    notify(
        billing_service.get_notification_gate(),
        f"auto-renew-unsubscribed:{subscriber_id}:{int(cancelled_at.timestamp())}",
        subscriber_id,
        messages.render(
            "auto_renew_cancelled",
            subscription.language,
            until=paid_until.date().isoformat(),
        ),
    )
    return billing_service.subscriptions.status(db, subscriber_id)


def reactivate(db: Session, subscriber_id: str) -> dict:
    billing_service.subscriptions.reactivate(db, subscriber_id)
    return billing_service.subscriptions.status(db, subscriber_id)
