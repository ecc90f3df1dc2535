"""Idempotency keys correlating a local charge intent with a gateway transaction.

Internally a charge is identified by a frozen value object; the underscore
joined string is only produced and parsed at the gateway boundary:

    <app>_recurring_<plan_id>_<subscriber_id>_<timestamp_ms>   recurring charge
    <app>_<plan_id>_<subscriber_id>_<timestamp_ms>             one-shot payment link
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from autorenew.config import settings
from autorenew.services.billing.exceptions import ReferenceFormatError
from autorenew.services.common import utc_now

_SEPARATOR = "_"
_RECURRING_MARKER = "recurring"


def _timestamp_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _validate_part(label: str, value: str) -> str:
    if not value:
        raise ReferenceFormatError(f"Empty {label} in reference")
    if label == "plan_id" and _SEPARATOR in value:
        raise ReferenceFormatError(f"plan_id may not contain '{_SEPARATOR}': {value}")
    return value


def _split_tail(tail: str, raw: str) -> tuple[str, str, int]:
    # subscriber ids are opaque, so plan is the first segment and the
    # timestamp the last; whatever sits between them is the subscriber.
    parts = tail.split(_SEPARATOR)
    if len(parts) < 3:
        raise ReferenceFormatError(f"Invalid reference format: {raw}")
    plan_id, *subscriber_parts, raw_ts = parts
    subscriber_id = _SEPARATOR.join(subscriber_parts)
    try:
        timestamp_ms = int(raw_ts)
    except ValueError as exc:
        raise ReferenceFormatError(f"Invalid reference timestamp: {raw}") from exc
    _validate_part("plan_id", plan_id)
    _validate_part("subscriber_id", subscriber_id)
    return plan_id, subscriber_id, timestamp_ms


@dataclass(frozen=True)
class RecurringReference:
    plan_id: str
    subscriber_id: str
    timestamp_ms: int
    app: str = settings.billing_reference_app

    @classmethod
    def new(
        cls, plan_id: str, subscriber_id: str, now: datetime | None = None
    ) -> RecurringReference:
        _validate_part("plan_id", plan_id)
        _validate_part("subscriber_id", subscriber_id)
        return cls(
            plan_id=plan_id,
            subscriber_id=subscriber_id,
            timestamp_ms=_timestamp_ms(now or utc_now()),
        )

    def to_wire(self) -> str:
        return _SEPARATOR.join(
            [
                self.app,
                _RECURRING_MARKER,
                self.plan_id,
                self.subscriber_id,
                str(self.timestamp_ms),
            ]
        )

    @classmethod
    def parse(cls, raw: str | None, app: str | None = None) -> RecurringReference:
        app = app or settings.billing_reference_app
        prefix = f"{app}{_SEPARATOR}{_RECURRING_MARKER}{_SEPARATOR}"
        if not raw or not raw.startswith(prefix):
            raise ReferenceFormatError(f"Not a recurring reference: {raw}")
        plan_id, subscriber_id, timestamp_ms = _split_tail(raw[len(prefix):], raw)
        return cls(
            plan_id=plan_id,
            subscriber_id=subscriber_id,
            timestamp_ms=timestamp_ms,
            app=app,
        )

    def __str__(self) -> str:
        return self.to_wire()


@dataclass(frozen=True)
class PaymentLinkReference:
    plan_id: str
    subscriber_id: str
    timestamp_ms: int
    app: str = settings.billing_reference_app

    @classmethod
    def new(
        cls, plan_id: str, subscriber_id: str, now: datetime | None = None
    ) -> PaymentLinkReference:
        _validate_part("plan_id", plan_id)
        _validate_part("subscriber_id", subscriber_id)
        return cls(
            plan_id=plan_id,
            subscriber_id=subscriber_id,
            timestamp_ms=_timestamp_ms(now or utc_now()),
        )

    def to_wire(self) -> str:
        return _SEPARATOR.join(
            [self.app, self.plan_id, self.subscriber_id, str(self.timestamp_ms)]
        )


def is_recurring_reference(raw: str | None, app: str | None = None) -> bool:
    app = app or settings.billing_reference_app
    return bool(raw) and raw.startswith(f"{app}{_SEPARATOR}{_RECURRING_MARKER}{_SEPARATOR}")
