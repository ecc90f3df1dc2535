"""Tokenized card references, one active source per subscriber."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from autorenew.models.billing import PaymentSource, PaymentSourceStatus
from autorenew.services import wompi
from autorenew.services.billing.exceptions import (
    GatewayError,
    NoPaymentMethod,
    TokenizationError,
)
from autorenew.services.common import utc_now

logger = logging.getLogger(__name__)


class PaymentSources:
    @staticmethod
    def get_active(db: Session, subscriber_id: str) -> PaymentSource | None:
        return (
            db.query(PaymentSource)
            .filter(PaymentSource.subscriber_id == subscriber_id)
            .filter(PaymentSource.status == PaymentSourceStatus.active)
            .first()
        )

    @classmethod
    def require_active(cls, db: Session, subscriber_id: str) -> PaymentSource:
        source = cls.get_active(db, subscriber_id)
        if not source:
            raise NoPaymentMethod(
                f"No active payment source for subscriber {subscriber_id}",
                detail={"subscriber_id": subscriber_id},
            )
        return source

    @staticmethod
    def latest(db: Session, subscriber_id: str) -> PaymentSource | None:
        return (
            db.query(PaymentSource)
            .filter(PaymentSource.subscriber_id == subscriber_id)
            .order_by(PaymentSource.created_at.desc())
            .first()
        )

    @staticmethod
    def _deactivate_current(db: Session, subscriber_id: str) -> None:
        now = utc_now()
        current = (
            db.query(PaymentSource)
            .filter(PaymentSource.subscriber_id == subscriber_id)
            .filter(PaymentSource.status == PaymentSourceStatus.active)
            .all()
        )
        for source in current:
            source.status = PaymentSourceStatus.cancelled
            source.cancelled_at = now
        if current:
            # Partial unique index must see the old row cancelled first.
            db.flush()

    @classmethod
    def store(
        cls,
        db: Session,
        *,
        subscriber_id: str,
        gateway_source_id: str,
        customer_email: str | None = None,
        card_brand: str | None = None,
        card_last_four: str | None = None,
    ) -> PaymentSource:
        """Persist a gateway source id as the subscriber's only active source."""
        cls._deactivate_current(db, subscriber_id)
        source = PaymentSource(
            subscriber_id=subscriber_id,
            gateway_source_id=str(gateway_source_id),
            customer_email=customer_email,
            card_brand=card_brand,
            card_last_four=card_last_four,
            status=PaymentSourceStatus.active,
        )
        db.add(source)
        db.commit()
        db.refresh(source)
        logger.info(
            "payment_source_stored subscriber_id=%s source_id=%s last_four=%s",
            subscriber_id,
            source.gateway_source_id,
            card_last_four,
        )
        return source

    @classmethod
    def create_from_token(
        cls,
        db: Session,
        subscriber_id: str,
        gateway_token: str,
        card_meta: dict | None = None,
    ) -> PaymentSource:
        """Exchange a one-time card token for a durable payment source.

        Raises:
            TokenizationError: the gateway rejected the token, no acceptance
                token could be obtained, or the gateway was unreachable.
        """
        if not gateway_token:
            raise TokenizationError("Card token is required")
        card_meta = card_meta or {}
        customer_email = card_meta.get("customer_email") or wompi.customer_email_for(
            subscriber_id
        )
        try:
            acceptance = wompi.get_acceptance_token()
            data = wompi.create_payment_source(
                token=gateway_token,
                customer_email=customer_email,
                acceptance_token=acceptance["acceptance_token"],
            )
        except GatewayError as exc:
            logger.warning(
                "payment_source_tokenization_failed subscriber_id=%s error=%s",
                subscriber_id,
                exc.message,
            )
            raise TokenizationError(
                f"Could not create payment source: {exc.message}", detail=exc.detail
            ) from exc

        source_id = data.get("id")
        if not source_id:
            raise TokenizationError("Gateway returned no payment source id", detail=data)
        public_data = data.get("public_data") or {}
        return cls.store(
            db,
            subscriber_id=subscriber_id,
            gateway_source_id=str(source_id),
            customer_email=customer_email,
            card_brand=card_meta.get("brand") or public_data.get("brand") or public_data.get("type"),
            card_last_four=card_meta.get("last_four") or public_data.get("last_four"),
        )

    @classmethod
    def cancel(cls, db: Session, subscriber_id: str) -> PaymentSource | None:
        source = cls.get_active(db, subscriber_id)
        if not source:
            return None
        source.status = PaymentSourceStatus.cancelled
        source.cancelled_at = utc_now()
        db.commit()
        db.refresh(source)
        logger.info(
            "payment_source_cancelled subscriber_id=%s source_id=%s",
            subscriber_id,
            source.gateway_source_id,
        )
        return source

    @classmethod
    def reactivate(cls, db: Session, subscriber_id: str) -> PaymentSource:
        """Re-enable the most recent source without re-tokenizing."""
        active = cls.get_active(db, subscriber_id)
        if active:
            return active
        source = cls.latest(db, subscriber_id)
        if not source:
            raise NoPaymentMethod(
                f"No payment source to reactivate for subscriber {subscriber_id}",
                detail={"subscriber_id": subscriber_id},
            )
        source.status = PaymentSourceStatus.active
        source.cancelled_at = None
        db.commit()
        db.refresh(source)
        logger.info(
            "payment_source_reactivated subscriber_id=%s source_id=%s",
            subscriber_id,
            source.gateway_source_id,
        )
        return source
