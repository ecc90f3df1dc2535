from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from autorenew.api.deps import require_internal_key
from autorenew.db import get_db
from autorenew.schemas.billing import (
    BillingAttemptRead,
    ChargeResultRead,
    RenewalTriggerResponse,
)
from autorenew.schemas.common import ListResponse
from autorenew.services import api_billing as api_billing_service
from autorenew.services import billing as billing_service

router = APIRouter(
    prefix="/api/billing",
    tags=["billing"],
    dependencies=[Depends(require_internal_key)],
)


@router.get("/attempts", response_model=ListResponse[BillingAttemptRead])
def list_attempts(
    subscriber_id: str | None = None,
    plan_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.billing_ledger.list_response(
        db, subscriber_id, plan_id, status, order_by, order_dir, limit=limit, offset=offset
    )


@router.get("/attempts/due", response_model=list[BillingAttemptRead])
def list_due_attempts(
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return api_billing_service.list_due_attempts(db, limit)


@router.get("/attempts/{attempt_id}", response_model=BillingAttemptRead)
def get_attempt(attempt_id: str, db: Session = Depends(get_db)):
    return billing_service.billing_ledger.get(db, attempt_id)


@router.post("/attempts/{attempt_id}/retry", response_model=RenewalTriggerResponse)
def retry_attempt(attempt_id: str, db: Session = Depends(get_db)):
    return api_billing_service.trigger_retry(db, attempt_id)


@router.post("/attempts/{attempt_id}/refresh", response_model=ChargeResultRead)
def refresh_attempt(attempt_id: str, db: Session = Depends(get_db)):
    return api_billing_service.refresh_pending(db, attempt_id)


@router.post("/subscriptions/{subscriber_id}/renew", response_model=RenewalTriggerResponse)
def renew_subscription(subscriber_id: str, db: Session = Depends(get_db)):
    return api_billing_service.trigger_renewal(db, subscriber_id)
