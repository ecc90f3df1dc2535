import asyncio
import contextlib
import logging

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import Response

from autorenew.api.billing import router as billing_router
from autorenew.api.subscribe import limiter as subscribe_limiter
from autorenew.api.subscribe import router as subscribe_router
from autorenew.api.webhooks import router as webhooks_router
from autorenew.errors import register_error_handlers
from autorenew.logging import configure_logging
from autorenew.services.billing.notifications import get_notification_gate
from autorenew.services.billing.pending_payments import get_pending_payments

SWEEP_INTERVAL_SECONDS = 3600

app = FastAPI(title="autorenew billing API")
logger = logging.getLogger(__name__)
app.state.limiter = subscribe_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

configure_logging()
register_error_handlers(app)

app.include_router(webhooks_router)
app.include_router(subscribe_router)
app.include_router(billing_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


def sweep_ephemeral_state() -> None:
    """Drop expired notification claims and abandoned payment links."""
    removed_notifications = get_notification_gate().sweep()
    removed_links = get_pending_payments().cleanup()
    logger.info(
        "ephemeral_state_swept notifications=%s pending_payments=%s",
        removed_notifications,
        removed_links,
    )


async def _sweep_loop() -> None:
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
        try:
            sweep_ephemeral_state()
        except Exception:
            logger.exception("Ephemeral state sweep failed")


@app.on_event("startup")
async def _start_sweeper():
    app.state.sweeper = asyncio.create_task(_sweep_loop())


@app.on_event("shutdown")
async def _stop_sweeper():
    task = getattr(app.state, "sweeper", None)
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
