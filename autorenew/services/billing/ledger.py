"""Billing attempt ledger.

Every charge invocation owns one ``BillingAttempt`` row. Rows move through a
small state machine and every transition is a compare-and-set ``UPDATE``
guarded by the state the caller expects, so the synchronous charge path and
the webhook path can race on the same row and exactly one of them wins:

    pending -> approved
    pending -> declined | error           (retry scheduled or exhausted)
    declined | error (retry scheduled) -> approved      (late approval)
    error (no gateway answer recorded) -> approved      (late approval)
    declined | error (retry scheduled) -> declined | error (retry claimed)

``approved`` and failed rows with no ``next_retry_at`` are final, except an
``error`` with no gateway transaction id, which stays open to a late approval.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from autorenew.models.billing import (
    FAILED_STATUSES,
    BillingAttempt,
    BillingAttemptStatus,
)
from autorenew.services.billing.retry_planner import RetryDecision
from autorenew.services.common import (
    apply_ordering,
    apply_pagination,
    get_by_id,
    list_response,
    round_money,
    validate_enum,
)

logger = logging.getLogger(__name__)


def _compare_and_set(db: Session, attempt: BillingAttempt, guard, values: dict) -> bool:
    """Apply ``values`` to ``attempt`` only if ``guard`` still holds in the database."""
    db.flush()
    updated = (
        db.query(BillingAttempt)
        .filter(BillingAttempt.id == attempt.id)
        .filter(guard)
        .update(values, synchronize_session=False)
    )
    db.commit()
    db.refresh(attempt)
    return updated == 1


class BillingLedger:
    @staticmethod
    def create_pending(
        db: Session,
        *,
        subscriber_id: str,
        plan_id: str,
        amount: Decimal | int | str,
        currency: str,
        reference: str,
        retry_count: int = 0,
    ) -> BillingAttempt:
        attempt = BillingAttempt(
            subscriber_id=subscriber_id,
            plan_id=plan_id,
            amount=round_money(amount),
            currency=currency,
            status=BillingAttemptStatus.pending,
            reference=reference,
            retry_count=retry_count,
        )
        db.add(attempt)
        db.commit()
        db.refresh(attempt)
        logger.info(
            "billing_attempt_created attempt_id=%s subscriber_id=%s plan_id=%s retry_count=%s",
            attempt.id,
            subscriber_id,
            plan_id,
            retry_count,
        )
        return attempt

    @staticmethod
    def get(db: Session, attempt_id: str) -> BillingAttempt:
        attempt = get_by_id(db, BillingAttempt, attempt_id)
        if not attempt:
            raise HTTPException(status_code=404, detail="Billing attempt not found")
        return attempt

    @staticmethod
    def record_transaction_id(
        db: Session, attempt: BillingAttempt, transaction_id: str | None
    ) -> bool:
        """Attach the gateway transaction id once; never overwrite a different one."""
        if not transaction_id:
            return False
        if attempt.gateway_transaction_id == transaction_id:
            return False
        return _compare_and_set(
            db,
            attempt,
            BillingAttempt.gateway_transaction_id.is_(None),
            {"gateway_transaction_id": transaction_id},
        )

    @staticmethod
    def mark_approved(
        db: Session, attempt: BillingAttempt, *, transaction_id: str | None = None
    ) -> bool:
        """Move a pending or provisionally failed attempt to ``approved``.

        Returns False when another writer already settled the attempt.
        """
        guard = or_(
            BillingAttempt.status == BillingAttemptStatus.pending,
            and_(
                BillingAttempt.status.in_(FAILED_STATUSES),
                BillingAttempt.next_retry_at.is_not(None),
            ),
            and_(
                BillingAttempt.status == BillingAttemptStatus.error,
                BillingAttempt.gateway_transaction_id.is_(None),
            ),
        )
        values: dict = {
            "status": BillingAttemptStatus.approved,
            "next_retry_at": None,
            "error_detail": None,
        }
        if transaction_id and not attempt.gateway_transaction_id:
            values["gateway_transaction_id"] = transaction_id
        applied = _compare_and_set(db, attempt, guard, values)
        logger.info(
            "billing_attempt_approved attempt_id=%s transaction_id=%s applied=%s",
            attempt.id,
            transaction_id or attempt.gateway_transaction_id,
            applied,
        )
        return applied

    @staticmethod
    def record_failure(
        db: Session,
        attempt: BillingAttempt,
        *,
        status: BillingAttemptStatus,
        decision: RetryDecision,
        error_detail: str | None = None,
        transaction_id: str | None = None,
    ) -> bool:
        """Move a pending attempt to ``declined``/``error`` with its retry decision."""
        if status not in FAILED_STATUSES:
            raise ValueError(f"{status.value} is not a failure status")
        values: dict = {
            "status": status,
            "retry_count": decision.retry_count,
            "next_retry_at": decision.next_retry_at,
            "error_detail": error_detail,
        }
        if transaction_id and not attempt.gateway_transaction_id:
            values["gateway_transaction_id"] = transaction_id
        applied = _compare_and_set(
            db,
            attempt,
            BillingAttempt.status == BillingAttemptStatus.pending,
            values,
        )
        logger.info(
            "billing_attempt_failed attempt_id=%s status=%s retry_count=%s "
            "next_retry_at=%s exhausted=%s applied=%s",
            attempt.id,
            status.value,
            decision.retry_count,
            decision.next_retry_at.isoformat() if decision.next_retry_at else None,
            decision.exhausted,
            applied,
        )
        return applied

    @staticmethod
    def claim_retry(db: Session, attempt: BillingAttempt, now: datetime) -> bool:
        """Consume a scheduled retry so it cannot be executed twice."""
        guard = and_(
            BillingAttempt.status.in_(FAILED_STATUSES),
            BillingAttempt.next_retry_at.is_not(None),
            BillingAttempt.next_retry_at <= now,
        )
        applied = _compare_and_set(db, attempt, guard, {"next_retry_at": None})
        if not applied:
            logger.info("billing_retry_claim_skipped attempt_id=%s", attempt.id)
        return applied

    @staticmethod
    def find_by_transaction_id(db: Session, transaction_id: str | None) -> BillingAttempt | None:
        if not transaction_id:
            return None
        return (
            db.query(BillingAttempt)
            .filter(BillingAttempt.gateway_transaction_id == transaction_id)
            .order_by(BillingAttempt.created_at.desc())
            .first()
        )

    @staticmethod
    def find_by_reference(db: Session, reference: str | None) -> BillingAttempt | None:
        if not reference:
            return None
        return (
            db.query(BillingAttempt)
            .filter(BillingAttempt.reference == reference)
            .first()
        )

    @staticmethod
    def latest(
        db: Session,
        subscriber_id: str,
        plan_id: str | None = None,
        status: BillingAttemptStatus | None = None,
    ) -> BillingAttempt | None:
        query = db.query(BillingAttempt).filter(
            BillingAttempt.subscriber_id == subscriber_id
        )
        if plan_id:
            query = query.filter(BillingAttempt.plan_id == plan_id)
        if status:
            query = query.filter(BillingAttempt.status == status)
        return query.order_by(BillingAttempt.created_at.desc()).first()

    @classmethod
    def find_for_transaction(
        cls,
        db: Session,
        *,
        transaction_id: str | None,
        reference: str | None,
        subscriber_id: str | None = None,
        plan_id: str | None = None,
    ) -> BillingAttempt | None:
        """Locate the attempt an inbound gateway event refers to.

        Lookup order: gateway transaction id, reference, then the latest
        pending attempt for the subscriber and plan.
        """
        attempt = cls.find_by_transaction_id(db, transaction_id)
        if attempt:
            return attempt
        attempt = cls.find_by_reference(db, reference)
        if attempt:
            return attempt
        if subscriber_id:
            return cls.latest(
                db, subscriber_id, plan_id, status=BillingAttemptStatus.pending
            )
        return None

    @staticmethod
    def open_attempt(
        db: Session,
        subscriber_id: str,
        plan_id: str,
        since: datetime | None = None,
    ) -> BillingAttempt | None:
        """Latest attempt still waiting on the gateway or on a scheduled retry."""
        query = (
            db.query(BillingAttempt)
            .filter(BillingAttempt.subscriber_id == subscriber_id)
            .filter(BillingAttempt.plan_id == plan_id)
            .filter(
                or_(
                    BillingAttempt.status == BillingAttemptStatus.pending,
                    and_(
                        BillingAttempt.status.in_(FAILED_STATUSES),
                        BillingAttempt.next_retry_at.is_not(None),
                    ),
                )
            )
        )
        if since is not None:
            query = query.filter(BillingAttempt.created_at >= since)
        return query.order_by(BillingAttempt.created_at.desc()).first()

    @staticmethod
    def due_attempts(db: Session, now: datetime, limit: int = 100) -> list[BillingAttempt]:
        return (
            db.query(BillingAttempt)
            .filter(BillingAttempt.status.in_(FAILED_STATUSES))
            .filter(BillingAttempt.next_retry_at.is_not(None))
            .filter(BillingAttempt.next_retry_at <= now)
            .order_by(BillingAttempt.next_retry_at.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def list(
        db: Session,
        subscriber_id: str | None,
        plan_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[BillingAttempt]:
        query = db.query(BillingAttempt)
        if subscriber_id:
            query = query.filter(BillingAttempt.subscriber_id == subscriber_id)
        if plan_id:
            query = query.filter(BillingAttempt.plan_id == plan_id)
        if status:
            query = query.filter(
                BillingAttempt.status
                == validate_enum(status, BillingAttemptStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": BillingAttempt.created_at,
                "next_retry_at": BillingAttempt.next_retry_at,
                "status": BillingAttempt.status,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @classmethod
    def list_response(cls, db: Session, *args, limit: int, offset: int, **kwargs) -> dict:
        items = cls.list(db, *args, limit=limit, offset=offset, **kwargs)
        return list_response(items, limit, offset)
