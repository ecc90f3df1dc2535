"""Gateway webhook orchestration."""

from __future__ import annotations

import json
import logging

from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from autorenew.services import billing as billing_service
from autorenew.services.wompi import verify_webhook_signature

logger = logging.getLogger(__name__)


def process_wompi_webhook(
    *,
    db: Session,
    body: bytes,
    checksum: str | None,
    timestamp: str | None,
) -> JSONResponse:
    if not verify_webhook_signature(body, checksum, timestamp):
        logger.warning("wompi_webhook_rejected reason=invalid_signature")
        return JSONResponse({"status": "invalid signature"}, status_code=401)

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return JSONResponse({"status": "invalid JSON"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"status": "invalid payload"}, status_code=400)

    try:
        outcome = billing_service.reconciler.process_event(db, payload)
    except Exception:
        db.rollback()
        logger.exception("wompi_webhook_failed event=%s", payload.get("event"))
        # non-2xx makes the gateway redeliver
        return JSONResponse({"status": "error"}, status_code=500)

    return JSONResponse({"status": "ok", "outcome": outcome.value}, status_code=200)
