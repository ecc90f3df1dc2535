"""First-payment checkout: card widget configuration and one-shot payment links."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from autorenew.config import settings
from autorenew.services import wompi
from autorenew.services.billing.exceptions import GatewayError
from autorenew.services.billing.pending_payments import get_pending_payments
from autorenew.services.billing.plans import get_plan
from autorenew.services.billing.references import PaymentLinkReference
from autorenew.services.common import utc_now

logger = logging.getLogger(__name__)


def widget_config(subscriber_id: str, plan_id: str, now: datetime | None = None) -> dict:
    """Everything the tokenization page needs to mount the gateway widget."""
    plan = get_plan(plan_id)
    reference = PaymentLinkReference.new(plan.id, subscriber_id, now=now).to_wire()
    try:
        permalink = wompi.get_acceptance_token()["permalink"] or None
    except GatewayError as exc:
        logger.warning(
            "checkout_acceptance_unavailable subscriber_id=%s error=%s", subscriber_id, exc.message
        )
        permalink = None
    return {
        "subscriber_id": subscriber_id,
        "plan": plan,
        "public_key": settings.wompi_public_key,
        "currency": settings.billing_currency,
        "reference": reference,
        "amount_in_cents": plan.amount_in_cents,
        "integrity_signature": wompi.integrity_signature(
            reference, plan.amount_in_cents, settings.billing_currency
        ),
        "redirect_url": settings.wompi_redirect_url,
        "acceptance_permalink": permalink,
    }


def create_payment_link(subscriber_id: str, plan_id: str, now: datetime | None = None) -> dict:
    """Create a single-use link and remember it until its webhook arrives."""
    now = now or utc_now()
    plan = get_plan(plan_id)
    reference = PaymentLinkReference.new(plan.id, subscriber_id, now=now).to_wire()
    expires_at = now + timedelta(hours=settings.wompi_link_expiry_hours)
    data = wompi.create_payment_link(
        name=reference,
        description=f"Monedita {plan.name}: {plan.description}",
        amount_in_cents=plan.amount_in_cents,
        currency=settings.billing_currency,
        redirect_url=settings.wompi_redirect_url,
        expires_at=expires_at,
        customer_email=wompi.customer_email_for(subscriber_id),
    )
    link_id = data.get("id")
    if not link_id:
        raise GatewayError("Wompi returned no payment link id", detail=data)
    get_pending_payments().register(str(link_id), subscriber_id, plan.id, now=now)
    logger.info(
        "checkout_link_created subscriber_id=%s plan_id=%s payment_link_id=%s",
        subscriber_id,
        plan.id,
        link_id,
    )
    return {
        "payment_link_id": str(link_id),
        "checkout_url": wompi.checkout_url(str(link_id)),
        "reference": reference,
        "expires_at": expires_at,
    }
