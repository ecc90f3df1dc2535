from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from autorenew.db import get_db
from autorenew.services import api_billing_webhooks as api_billing_webhooks_service

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/wompi")
async def wompi_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    return api_billing_webhooks_service.process_wompi_webhook(
        db=db,
        body=body,
        checksum=request.headers.get("X-Event-Checksum"),
        timestamp=request.headers.get("X-Event-Timestamp"),
    )
