import os
import sqlite3
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

# Settings are read once at import time.
os.environ.setdefault("WOMPI_PUBLIC_KEY", "pub_test_key")
os.environ.setdefault("WOMPI_PRIVATE_KEY", "prv_test_key")
os.environ.setdefault("WOMPI_EVENTS_SECRET", "test_events_secret")
os.environ.setdefault("WOMPI_INTEGRITY_SECRET", "test_integrity_secret")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("SUBSCRIBE_TOKEN_SECRET", "test-subscribe-secret")
os.environ["REDIS_URL"] = ""
os.environ["NOTIFIER"] = "log"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from autorenew.db import Base


class _JoseDateTimeProxy:
    def utcnow(self):
        from datetime import datetime, timezone

        return datetime.now(timezone.utc)

    def now(self, tz: Any | None = None):
        from datetime import datetime

        return datetime.now(tz)

    def __getattr__(self, name: str) -> Any:
        from datetime import datetime

        return getattr(datetime, name)


@pytest.fixture(autouse=True)
def _patch_jose_datetime(monkeypatch):
    import jose.jwt as jose_jwt

    monkeypatch.setattr(jose_jwt, "datetime", _JoseDateTimeProxy(), raising=False)

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)


from autorenew.models.billing import Subscription
from autorenew.services.billing.notifications import (
    InMemoryNotificationLedger,
    NotificationGate,
    set_notification_gate,
)
from autorenew.services.billing.payment_sources import PaymentSources
from autorenew.services.billing.pending_payments import (
    InMemoryPendingPayments,
    set_pending_payments,
)
from tests.mocks import FakeNotifier

SUBSCRIBER_ID = "573001234567"


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def notification_gate():
    """Fresh in-memory gate with a recording notifier for every test."""
    gate = NotificationGate(InMemoryNotificationLedger(), FakeNotifier())
    set_notification_gate(gate)
    yield gate
    set_notification_gate(None)


@pytest.fixture()
def notifier(notification_gate) -> FakeNotifier:
    return notification_gate.notifier


@pytest.fixture(autouse=True)
def pending_payments():
    registry = InMemoryPendingPayments()
    set_pending_payments(registry)
    yield registry
    set_pending_payments(None)


@pytest.fixture()
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def subscriber_id() -> str:
    return SUBSCRIBER_ID


@pytest.fixture()
def payment_source(db_session, subscriber_id):
    return PaymentSources.store(
        db_session,
        subscriber_id=subscriber_id,
        gateway_source_id="3891",
        customer_email=f"{subscriber_id}@monedita.app",
        card_brand="VISA",
        card_last_four="4242",
    )


@pytest.fixture()
def due_subscription(db_session, subscriber_id, now):
    """Basic plan whose paid period ends exactly at ``now``."""
    subscription = Subscription(
        subscriber_id=subscriber_id,
        plan_id="basic",
        language="es",
        started_at=now - timedelta(days=30),
        next_billing_date=now,
        auto_renew=True,
    )
    db_session.add(subscription)
    db_session.commit()
    db_session.refresh(subscription)
    return subscription
