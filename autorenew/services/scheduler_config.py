import os
from datetime import timedelta

from autorenew.config import settings


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": os.getenv("CELERY_TIMEZONE", "UTC"),
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if _env_bool("NOTIFICATION_SWEEP_ENABLED", True):
        schedule["notification_ledger_sweep"] = {
            "task": "autorenew.tasks.billing.sweep_notification_ledger",
            "schedule": timedelta(
                minutes=max(_env_int("NOTIFICATION_SWEEP_INTERVAL_MINUTES", 60), 1)
            ),
        }
    if _env_bool("PENDING_PAYMENT_CLEANUP_ENABLED", True):
        schedule["pending_payment_cleanup"] = {
            "task": "autorenew.tasks.billing.cleanup_pending_payments",
            "schedule": timedelta(
                minutes=max(_env_int("PENDING_PAYMENT_CLEANUP_INTERVAL_MINUTES", 60), 1)
            ),
        }
    return schedule
