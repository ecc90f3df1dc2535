"""Short-lived registry of one-shot payment links awaiting their first payment.

Entries are keyed by the gateway payment-link id and consumed atomically on
first lookup, so a redelivered webhook for the same link finds nothing.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, cast

import redis

from autorenew.config import settings
from autorenew.services.common import utc_now

logger = logging.getLogger(__name__)

PENDING_PAYMENT_TTL = timedelta(hours=48)
REDIS_PREFIX = "pending_payment:"


def _is_expired(entry: dict[str, Any], now: datetime, ttl: timedelta) -> bool:
    return entry["created_at"] < now - ttl


class InMemoryPendingPayments:
    def __init__(self, ttl: timedelta = PENDING_PAYMENT_TTL):
        self.ttl = ttl
        self._entries: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def register(
        self,
        payment_link_id: str,
        subscriber_id: str,
        plan_id: str,
        now: datetime | None = None,
    ) -> None:
        with self._lock:
            self._entries[payment_link_id] = {
                "subscriber_id": subscriber_id,
                "plan_id": plan_id,
                "created_at": now or utc_now(),
            }

    def consume(self, payment_link_id: str | None, now: datetime | None = None) -> dict[str, Any] | None:
        if not payment_link_id:
            return None
        with self._lock:
            entry = self._entries.pop(payment_link_id, None)
        if entry and _is_expired(entry, now or utc_now(), self.ttl):
            logger.info("pending_payment_expired payment_link_id=%s", payment_link_id)
            return None
        return entry

    def cleanup(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        with self._lock:
            stale = [
                key for key, entry in self._entries.items() if _is_expired(entry, now, self.ttl)
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)


class RedisPendingPayments:
    def __init__(self, client: redis.Redis, ttl: timedelta = PENDING_PAYMENT_TTL):
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: str) -> RedisPendingPayments:
        return cls(cast(redis.Redis, redis.from_url(url, decode_responses=True)))

    def register(
        self,
        payment_link_id: str,
        subscriber_id: str,
        plan_id: str,
        now: datetime | None = None,
    ) -> None:
        created_at = now or utc_now()
        self.client.setex(
            f"{REDIS_PREFIX}{payment_link_id}",
            self.ttl,
            json.dumps(
                {
                    "subscriber_id": subscriber_id,
                    "plan_id": plan_id,
                    "created_at": created_at.isoformat(),
                }
            ),
        )

    def consume(self, payment_link_id: str | None, now: datetime | None = None) -> dict[str, Any] | None:
        if not payment_link_id:
            return None
        key = f"{REDIS_PREFIX}{payment_link_id}"
        # get + delete in one round trip so only one consumer sees the entry
        pipe = cast(Any, self.client.pipeline())
        pipe.get(key)
        pipe.delete(key)
        results = cast(list[object], pipe.execute())
        raw = results[0]
        if not raw:
            return None
        entry = json.loads(cast(str, raw))
        entry["created_at"] = datetime.fromisoformat(entry["created_at"])
        return entry

    def cleanup(self, now: datetime | None = None) -> int:
        return 0


_registry: InMemoryPendingPayments | RedisPendingPayments | None = None
_registry_lock = threading.Lock()


def get_pending_payments() -> InMemoryPendingPayments | RedisPendingPayments:
    global _registry
    with _registry_lock:
        if _registry is None:
            if settings.redis_url:
                _registry = RedisPendingPayments.from_url(settings.redis_url)
            else:
                _registry = InMemoryPendingPayments()
        return _registry


def set_pending_payments(registry: InMemoryPendingPayments | RedisPendingPayments | None) -> None:
    global _registry
    with _registry_lock:
        _registry = registry
