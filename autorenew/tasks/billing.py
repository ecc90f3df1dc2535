import logging
import time

from autorenew.celery_app import celery_app
from autorenew.db import SessionLocal
from autorenew.metrics import observe_job
from autorenew.services import billing as billing_service
from autorenew.services.billing.exceptions import NoPaymentMethod

logger = logging.getLogger(__name__)


@celery_app.task(name="autorenew.tasks.billing.renew_subscription")
def renew_subscription(subscriber_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        result = billing_service.renewals.run_renewal(session, subscriber_id)
        if result is None:
            status = "skipped"
            return None
        return result.outcome.value
    except NoPaymentMethod:
        status = "no_payment_method"
        logger.warning("renewal_blocked subscriber_id=%s reason=no_payment_method", subscriber_id)
        return None
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("renewal_failed subscriber_id=%s", subscriber_id)
        raise
    finally:
        session.close()
        observe_job("renew_subscription", status, time.monotonic() - start)


@celery_app.task(name="autorenew.tasks.billing.retry_billing_attempt")
def retry_billing_attempt(attempt_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        result = billing_service.renewals.retry_attempt(session, attempt_id)
        if result is None:
            status = "skipped"
            return None
        return result.outcome.value
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("retry_failed attempt_id=%s", attempt_id)
        raise
    finally:
        session.close()
        observe_job("retry_billing_attempt", status, time.monotonic() - start)


@celery_app.task(name="autorenew.tasks.billing.sweep_notification_ledger")
def sweep_notification_ledger():
    start = time.monotonic()
    status = "success"
    try:
        return billing_service.get_notification_gate().sweep()
    except Exception:
        status = "error"
        raise
    finally:
        observe_job("sweep_notification_ledger", status, time.monotonic() - start)


@celery_app.task(name="autorenew.tasks.billing.cleanup_pending_payments")
def cleanup_pending_payments():
    start = time.monotonic()
    status = "success"
    try:
        removed = billing_service.get_pending_payments().cleanup()
        logger.info("pending_payments_cleaned removed=%s", removed)
        return removed
    except Exception:
        status = "error"
        raise
    finally:
        observe_job("cleanup_pending_payments", status, time.monotonic() - start)
