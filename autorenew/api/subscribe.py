from fastapi import APIRouter, Depends, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from autorenew.api.deps import get_subscribe_principal
from autorenew.db import get_db
from autorenew.schemas.billing import (
    ChargeResultRead,
    CheckoutLinkResponse,
    PaymentSourceRead,
    SubscribePageRead,
    SubscriptionStatusRead,
    TokenizeRequest,
)
from autorenew.services import api_billing as api_billing_service
from autorenew.services import api_subscribe as api_subscribe_service

router = APIRouter(prefix="/api/subscribe", tags=["subscribe"])
limiter = Limiter(key_func=get_remote_address)

WRITE_LIMIT = "10/minute"


@router.get("", response_model=SubscribePageRead)
def subscribe_page(principal: dict = Depends(get_subscribe_principal)):
    return api_subscribe_service.subscribe_page(
        principal["subscriber_id"], principal["plan_id"]
    )


@router.post(
    "/tokenize",
    response_model=PaymentSourceRead,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(WRITE_LIMIT)
def tokenize_card(
    request: Request,
    payload: TokenizeRequest,
    principal: dict = Depends(get_subscribe_principal),
    db: Session = Depends(get_db),
):
    return api_subscribe_service.tokenize(
        db,
        principal["subscriber_id"],
        payload.card_token,
        {"brand": payload.card_brand, "last_four": payload.card_last_four},
    )


@router.post("/charge", response_model=ChargeResultRead)
@limiter.limit(WRITE_LIMIT)
def charge_first_period(
    request: Request,
    principal: dict = Depends(get_subscribe_principal),
    db: Session = Depends(get_db),
):
    result = api_subscribe_service.charge_first_period(
        db, principal["subscriber_id"], principal["plan_id"]
    )
    return api_billing_service.charge_result_payload(result)


@router.post(
    "/link",
    response_model=CheckoutLinkResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(WRITE_LIMIT)
def create_payment_link(
    request: Request,
    principal: dict = Depends(get_subscribe_principal),
):
    return api_subscribe_service.payment_link(
        principal["subscriber_id"], principal["plan_id"]
    )


@router.get("/status", response_model=SubscriptionStatusRead)
def subscription_status(
    principal: dict = Depends(get_subscribe_principal),
    db: Session = Depends(get_db),
):
    return api_subscribe_service.status(db, principal["subscriber_id"])


@router.post("/cancel", response_model=SubscriptionStatusRead)
@limiter.limit(WRITE_LIMIT)
def cancel_auto_renew(
    request: Request,
    principal: dict = Depends(get_subscribe_principal),
    db: Session = Depends(get_db),
):
    return api_subscribe_service.cancel(db, principal["subscriber_id"])


@router.post("/reactivate", response_model=SubscriptionStatusRead)
@limiter.limit(WRITE_LIMIT)
def reactivate_auto_renew(
    request: Request,
    principal: dict = Depends(get_subscribe_principal),
    db: Session = Depends(get_db),
):
    return api_subscribe_service.reactivate(db, principal["subscriber_id"])
