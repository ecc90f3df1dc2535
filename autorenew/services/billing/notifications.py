"""Exactly-once subscriber notifications for billing outcomes.

The ``NotificationGate`` keys every outbound message by the gateway
transaction id (or another stable outcome key). A key is claimed in the
notification ledger before delivery and kept afterwards, so the synchronous
charge path and any number of webhook redeliveries produce one message.

The in-memory ledger is process-local. Running more than one instance needs
``REDIS_URL`` so the ledger is shared; even then the gate deduplicates
messages, it does not serialize billing work across instances.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Protocol, cast

import httpx
import redis

from autorenew.config import settings
from autorenew.metrics import NOTIFICATIONS
from autorenew.services.common import utc_now

logger = logging.getLogger(__name__)

NOTIFICATION_TTL = timedelta(hours=1)
REDIS_PREFIX = "billing_notification:"


class NotificationLedger(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def set_if_absent(self, key: str, record: dict[str, Any]) -> bool: ...

    def delete(self, key: str) -> None: ...

    def expire(self, now: datetime | None = None) -> int: ...


class InMemoryNotificationLedger:
    def __init__(self, ttl: timedelta = NOTIFICATION_TTL):
        self.ttl = ttl
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._records.get(key)

    def set_if_absent(self, key: str, record: dict[str, Any]) -> bool:
        with self._lock:
            if key in self._records:
                return False
            self._records[key] = record
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def expire(self, now: datetime | None = None) -> int:
        cutoff = (now or utc_now()) - self.ttl
        with self._lock:
            stale = [
                key
                for key, record in self._records.items()
                if record["sent_at"] < cutoff
            ]
            for key in stale:
                del self._records[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RedisNotificationLedger:
    """Shared ledger; entries expire through the Redis TTL."""

    def __init__(self, client: redis.Redis, ttl: timedelta = NOTIFICATION_TTL):
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: str) -> RedisNotificationLedger:
        return cls(cast(redis.Redis, redis.from_url(url, decode_responses=True)))

    def get(self, key: str) -> dict[str, Any] | None:
        raw = self.client.get(f"{REDIS_PREFIX}{key}")
        if not raw:
            return None
        record = json.loads(cast(str, raw))
        record["sent_at"] = datetime.fromisoformat(record["sent_at"])
        return record

    def set_if_absent(self, key: str, record: dict[str, Any]) -> bool:
        payload = json.dumps({**record, "sent_at": record["sent_at"].isoformat()})
        return bool(
            self.client.set(
                f"{REDIS_PREFIX}{key}",
                payload,
                nx=True,
                ex=int(self.ttl.total_seconds()),
            )
        )

    def delete(self, key: str) -> None:
        self.client.delete(f"{REDIS_PREFIX}{key}")

    def expire(self, now: datetime | None = None) -> int:
        return 0


class Notifier(Protocol):
    def send(self, subscriber_id: str, message: str) -> None: ...


class LogNotifier:
    """Writes messages to the log instead of delivering them."""

    def send(self, subscriber_id: str, message: str) -> None:
        logger.info(
            "notification_logged subscriber_id=%s chars=%s", subscriber_id, len(message)
        )


class WhatsAppNotifier:
    """Sends plain text messages through the WhatsApp Cloud API."""

    def __init__(
        self,
        api_base: str | None = None,
        phone_number_id: str | None = None,
        access_token: str | None = None,
    ):
        self.api_base = (api_base or settings.whatsapp_api_base).rstrip("/")
        self.phone_number_id = phone_number_id or settings.whatsapp_phone_number_id
        self.access_token = access_token or settings.whatsapp_access_token

    def send(self, subscriber_id: str, message: str) -> None:
        if not self.phone_number_id or not self.access_token:
            raise RuntimeError("WhatsApp credentials are not configured")
        resp = httpx.post(
            f"{self.api_base}/{self.phone_number_id}/messages",
            json={
                "messaging_product": "whatsapp",
                "to": subscriber_id,
                "type": "text",
                "text": {"body": message},
            },
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=30,
        )
        resp.raise_for_status()


class NotificationGate:
    def __init__(self, ledger: NotificationLedger, notifier: Notifier):
        self.ledger = ledger
        self.notifier = notifier

    def already_sent(self, key: str) -> bool:
        return self.ledger.get(key) is not None

    def send(self, key: str, subscriber_id: str, message: str) -> bool:
        """Deliver ``message`` once per ``key``.

        Returns True if this call delivered it. A failed delivery releases
        the claim and re-raises so a later attempt can send it.
        """
        if not key:
            raise ValueError("Notification key is required")
        record = {"subscriber_id": subscriber_id, "sent_at": utc_now()}
        if not self.ledger.set_if_absent(key, record):
            NOTIFICATIONS.labels(result="duplicate").inc()
            logger.info(
                "notification_skipped_duplicate key=%s subscriber_id=%s", key, subscriber_id
            )
            return False
        try:
            self.notifier.send(subscriber_id, message)
        except Exception:
            self.ledger.delete(key)
            NOTIFICATIONS.labels(result="error").inc()
            logger.exception(
                "notification_failed key=%s subscriber_id=%s", key, subscriber_id
            )
            raise
        NOTIFICATIONS.labels(result="sent").inc()
        logger.info("notification_sent key=%s subscriber_id=%s", key, subscriber_id)
        return True

    def sweep(self, now: datetime | None = None) -> int:
        removed = self.ledger.expire(now)
        if removed:
            logger.info("notification_ledger_swept removed=%s", removed)
        return removed


def notify(gate: NotificationGate, key: str, subscriber_id: str, message: str) -> bool:
    """Send through the gate without failing the billing transition that caused it.

    The claim is released on failure, so a later outcome for the same key can
    still deliver.
    """
    try:
        return gate.send(key, subscriber_id, message)
    except Exception as exc:
        logger.warning(
            "notification_deferred key=%s subscriber_id=%s error=%s", key, subscriber_id, exc
        )
        return False


def build_notifier() -> Notifier:
    if settings.notifier == "whatsapp":
        return WhatsAppNotifier()
    return LogNotifier()


def build_notification_ledger() -> NotificationLedger:
    if settings.redis_url:
        return RedisNotificationLedger.from_url(settings.redis_url)
    return InMemoryNotificationLedger()


_gate: NotificationGate | None = None
_gate_lock = threading.Lock()


def get_notification_gate() -> NotificationGate:
    global _gate
    with _gate_lock:
        if _gate is None:
            _gate = NotificationGate(build_notification_ledger(), build_notifier())
        return _gate


def set_notification_gate(gate: NotificationGate | None) -> None:
    global _gate
    with _gate_lock:
        _gate = gate
