from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from autorenew.models.billing import BillingAttemptStatus, PaymentSourceStatus


class BillingAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscriber_id: str
    plan_id: str
    amount: Decimal
    currency: str
    status: BillingAttemptStatus
    reference: str
    gateway_transaction_id: str | None = None
    retry_count: int
    next_retry_at: datetime | None = None
    error_detail: str | None = None
    created_at: datetime
    updated_at: datetime


class PaymentSourceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscriber_id: str
    card_brand: str | None = None
    card_last_four: str | None = None
    status: PaymentSourceStatus
    created_at: datetime
    cancelled_at: datetime | None = None


class RetryDecisionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    retry_count: int
    delay_days: int
    next_retry_at: datetime | None = None
    exhausted: bool


class ChargeResultRead(BaseModel):
    outcome: str
    applied: bool
    attempt: BillingAttemptRead
    decision: RetryDecisionRead | None = None


class RenewalTriggerResponse(BaseModel):
    executed: bool
    result: ChargeResultRead | None = None


class TokenizeRequest(BaseModel):
    card_token: str = Field(min_length=1, max_length=255)
    card_brand: str | None = Field(default=None, max_length=40)
    card_last_four: str | None = Field(default=None, min_length=4, max_length=4)


class CheckoutLinkResponse(BaseModel):
    payment_link_id: str
    checkout_url: str
    reference: str
    expires_at: datetime


class CardSummary(BaseModel):
    brand: str | None = None
    last_four: str | None = None


class LastBillingSummary(BaseModel):
    status: str
    amount: Decimal
    currency: str
    retry_count: int
    next_retry_at: datetime | None = None
    created_at: datetime | None = None


class SubscriptionStatusRead(BaseModel):
    subscriber_id: str
    plan_id: str
    plan_name: str
    language: str
    started_at: datetime | None = None
    next_billing_date: datetime | None = None
    auto_renew: bool
    cancelled_at: datetime | None = None
    renewal_failed_at: datetime | None = None
    card: CardSummary | None = None
    last_billing: LastBillingSummary | None = None


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price: Decimal
    description: str
    amount_in_cents: int


class SubscribePageRead(BaseModel):
    """What the tokenization page needs to render the card widget."""

    subscriber_id: str
    plan: PlanRead
    public_key: str
    currency: str
    reference: str
    amount_in_cents: int
    integrity_signature: str
    redirect_url: str
    acceptance_permalink: str | None = None
