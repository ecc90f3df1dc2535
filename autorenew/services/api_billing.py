"""Internal billing API orchestration."""

from __future__ import annotations

from sqlalchemy.orm import Session

from autorenew.models.billing import FAILED_STATUSES
from autorenew.services import billing as billing_service
from autorenew.services.billing.charges import ChargeResult
from autorenew.services.billing.exceptions import MaxRetriesExceeded
from autorenew.services.billing.retry_planner import MAX_FAILURES
from autorenew.services.common import utc_now


def charge_result_payload(result: ChargeResult) -> dict:
    return {
        "outcome": result.outcome.value,
        "applied": result.applied,
        "attempt": result.attempt,
        "decision": result.decision,
    }


def trigger_payload(result: ChargeResult | None) -> dict:
    if result is None:
        return {"executed": False, "result": None}
    return {"executed": True, "result": charge_result_payload(result)}


def list_due_attempts(db: Session, limit: int) -> list:
    return billing_service.billing_ledger.due_attempts(db, utc_now(), limit=limit)


def trigger_renewal(db: Session, subscriber_id: str) -> dict:
    return trigger_payload(billing_service.renewals.run_renewal(db, subscriber_id))


def trigger_retry(db: Session, attempt_id: str) -> dict:
    attempt = billing_service.billing_ledger.get(db, attempt_id)
    if attempt.status in FAILED_STATUSES and attempt.retry_count >= MAX_FAILURES:
        raise MaxRetriesExceeded(
            "Retry budget exhausted for this charge",
            detail={"attempt_id": str(attempt.id), "retry_count": attempt.retry_count},
        )
    return trigger_payload(billing_service.renewals.retry_attempt(db, attempt_id))


def refresh_pending(db: Session, attempt_id: str) -> dict:
    return charge_result_payload(billing_service.renewals.refresh_pending(db, attempt_id))
