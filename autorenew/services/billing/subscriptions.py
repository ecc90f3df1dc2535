"""Subscription state: plan, paid-through date and the auto-renew flag.

``auto_renew`` is derived: it is true only while neither ``cancelled_at``
(explicit unsubscribe, or a first payment that left no reusable card) nor
``renewal_failed_at`` (retry budget exhausted) is set.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from fastapi import HTTPException
from sqlalchemy.orm import Session

from autorenew.config import settings
from autorenew.models.billing import Subscription
from autorenew.services.billing.ledger import BillingLedger
from autorenew.services.billing.payment_sources import PaymentSources
from autorenew.services.billing.plans import SUBSCRIPTION_PLANS, get_plan
from autorenew.services.common import as_utc, utc_now

logger = logging.getLogger(__name__)

FREE_PLAN = "free"


def _period() -> timedelta:
    return timedelta(days=settings.billing_period_days)


def _sync_auto_renew(subscription: Subscription) -> None:
    subscription.auto_renew = (
        subscription.cancelled_at is None and subscription.renewal_failed_at is None
    )


class Subscriptions:
    @staticmethod
    def find(db: Session, subscriber_id: str) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.subscriber_id == subscriber_id)
            .first()
        )

    @classmethod
    def get(cls, db: Session, subscriber_id: str) -> Subscription:
        subscription = cls.find(db, subscriber_id)
        if not subscription:
            raise HTTPException(status_code=404, detail="Subscription not found")
        return subscription

    @classmethod
    def get_or_create(
        cls, db: Session, subscriber_id: str, language: str | None = None
    ) -> Subscription:
        subscription = cls.find(db, subscriber_id)
        if subscription:
            return subscription
        subscription = Subscription(
            subscriber_id=subscriber_id,
            plan_id=FREE_PLAN,
            language=language or "es",
            auto_renew=False,
        )
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
        return subscription

    @classmethod
    def extend(
        cls,
        db: Session,
        subscriber_id: str,
        plan_id: str,
        now: datetime | None = None,
    ) -> Subscription:
        """Advance the paid-through date by exactly one billing period."""
        now = now or utc_now()
        subscription = cls.get_or_create(db, subscriber_id)
        current = as_utc(subscription.next_billing_date)
        base = current if current and current > now else now
        subscription.plan_id = plan_id
        subscription.next_billing_date = base + _period()
        if subscription.started_at is None:
            subscription.started_at = now
        subscription.renewal_failed_at = None
        _sync_auto_renew(subscription)
        db.commit()
        db.refresh(subscription)
        logger.info(
            "subscription_extended subscriber_id=%s plan_id=%s next_billing_date=%s auto_renew=%s",
            subscriber_id,
            plan_id,
            subscription.next_billing_date.isoformat(),
            subscription.auto_renew,
        )
        return subscription

    @classmethod
    def activate_plan(
        cls,
        db: Session,
        subscriber_id: str,
        plan_id: str,
        *,
        auto_renew: bool,
        now: datetime | None = None,
    ) -> Subscription:
        """Start a paid plan after a one-shot first payment."""
        get_plan(plan_id)
        now = now or utc_now()
        subscription = cls.get_or_create(db, subscriber_id)
        subscription.cancelled_at = None if auto_renew else now
        subscription.started_at = now
        db.commit()
        subscription = cls.extend(db, subscriber_id, plan_id, now=now)
        logger.info(
            "subscription_activated subscriber_id=%s plan_id=%s auto_renew=%s",
            subscriber_id,
            plan_id,
            subscription.auto_renew,
        )
        return subscription

    @classmethod
    def mark_retries_exhausted(
        cls, db: Session, subscriber_id: str, now: datetime | None = None
    ) -> bool:
        """Turn auto-renew off after the last retry failed.

        The plan stays active until ``next_billing_date``. Returns False when
        the subscription was already marked.
        """
        subscription = cls.find(db, subscriber_id)
        if not subscription or subscription.renewal_failed_at is not None:
            return False
        subscription.renewal_failed_at = now or utc_now()
        _sync_auto_renew(subscription)
        db.commit()
        logger.info(
            "subscription_auto_renew_disabled subscriber_id=%s reason=retries_exhausted",
            subscriber_id,
        )
        return True

    @classmethod
    def cancel_auto_renew(cls, db: Session, subscriber_id: str) -> Subscription:
        """Explicit unsubscribe: stop renewals and retire the stored card."""
        subscription = cls.get(db, subscriber_id)
        if subscription.cancelled_at is None:
            subscription.cancelled_at = utc_now()
        _sync_auto_renew(subscription)
        db.commit()
        PaymentSources.cancel(db, subscriber_id)
        db.refresh(subscription)
        logger.info("subscription_auto_renew_cancelled subscriber_id=%s", subscriber_id)
        return subscription

    @classmethod
    def reactivate(cls, db: Session, subscriber_id: str) -> Subscription:
        """Turn auto-renew back on; needs a previously stored card."""
        subscription = cls.get(db, subscriber_id)
        PaymentSources.reactivate(db, subscriber_id)
        subscription.cancelled_at = None
        subscription.renewal_failed_at = None
        _sync_auto_renew(subscription)
        db.commit()
        db.refresh(subscription)
        logger.info("subscription_auto_renew_reactivated subscriber_id=%s", subscriber_id)
        return subscription

    @staticmethod
    def is_due(subscription: Subscription, now: datetime | None = None) -> bool:
        now = now or utc_now()
        next_billing = as_utc(subscription.next_billing_date)
        return (
            subscription.auto_renew
            and subscription.plan_id in SUBSCRIPTION_PLANS
            and next_billing is not None
            and next_billing <= now
        )

    @staticmethod
    def cycle_start(subscription: Subscription) -> datetime | None:
        """Start of the billing period that ``next_billing_date`` closes."""
        next_billing = as_utc(subscription.next_billing_date)
        return next_billing - _period() if next_billing else None

    @classmethod
    def open_renewal_attempt(cls, db: Session, subscription: Subscription):
        return BillingLedger.open_attempt(
            db,
            subscription.subscriber_id,
            subscription.plan_id,
            since=cls.cycle_start(subscription),
        )

    @classmethod
    def due_for_renewal(cls, db: Session, now: datetime, limit: int = 100) -> list[Subscription]:
        """Subscriptions to charge now; cycles already being charged or retried are left out."""
        candidates = (
            db.query(Subscription)
            .filter(Subscription.auto_renew.is_(True))
            .filter(Subscription.plan_id.in_(list(SUBSCRIPTION_PLANS)))
            .filter(Subscription.next_billing_date.is_not(None))
            .filter(Subscription.next_billing_date <= now)
            .order_by(Subscription.next_billing_date.asc())
            .all()
        )
        due: list[Subscription] = []
        for subscription in candidates:
            if cls.open_renewal_attempt(db, subscription):
                continue
            due.append(subscription)
            if len(due) >= limit:
                break
        return due

    @classmethod
    def status(cls, db: Session, subscriber_id: str) -> dict:
        subscription = cls.get_or_create(db, subscriber_id)
        plan = SUBSCRIPTION_PLANS.get(subscription.plan_id)
        source = PaymentSources.get_active(db, subscriber_id)
        last_attempt = BillingLedger.latest(db, subscriber_id)
        return {
            "subscriber_id": subscriber_id,
            "plan_id": subscription.plan_id,
            "plan_name": plan.name if plan else "Free",
            "language": subscription.language,
            "started_at": as_utc(subscription.started_at),
            "next_billing_date": as_utc(subscription.next_billing_date),
            "auto_renew": subscription.auto_renew,
            "cancelled_at": as_utc(subscription.cancelled_at),
            "renewal_failed_at": as_utc(subscription.renewal_failed_at),
            "card": (
                {"brand": source.card_brand, "last_four": source.card_last_four}
                if source
                else None
            ),
            "last_billing": (
                {
                    "status": last_attempt.status.value,
                    "amount": last_attempt.amount,
                    "currency": last_attempt.currency,
                    "retry_count": last_attempt.retry_count,
                    "next_retry_at": as_utc(last_attempt.next_retry_at),
                    "created_at": as_utc(last_attempt.created_at),
                }
                if last_attempt
                else None
            ),
        }
