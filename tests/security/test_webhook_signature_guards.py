from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from autorenew.api import webhooks as webhooks_api
from autorenew.config import settings
from autorenew.db import get_db
from autorenew.services import billing as billing_service
from tests.mocks import signed_webhook, webhook_event, wompi_transaction


@pytest.fixture()
def webhook_test_app(db_session):
    app = FastAPI()
    app.include_router(webhooks_api.router)
    app.dependency_overrides[get_db] = lambda: db_session
    yield app
    app.dependency_overrides.clear()


@pytest.fixture()
async def webhook_client(webhook_test_app):
    transport = ASGITransport(app=webhook_test_app, client=("198.51.100.10", 54321))
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


def _approval() -> dict:
    return webhook_event(
        wompi_transaction(
            "tx-forged",
            "APPROVED",
            reference="monedita_recurring_basic_573001234567_1772366400",
        )
    )


@pytest.mark.asyncio
async def test_forged_signature_never_reaches_reconciler(webhook_client):
    body, headers = signed_webhook(_approval(), "not-the-events-secret")

    with patch.object(billing_service.reconciler, "process_event") as process:
        response = await webhook_client.post("/webhooks/wompi", content=body, headers=headers)

    assert response.status_code == 401
    process.assert_not_called()


@pytest.mark.asyncio
async def test_replayed_checksum_with_new_body_is_rejected(webhook_client):
    body, headers = signed_webhook(_approval(), settings.wompi_events_secret)
    tampered = json.loads(body)
    tampered["data"]["transaction"]["status"] = "DECLINED"

    with patch.object(billing_service.reconciler, "process_event") as process:
        response = await webhook_client.post(
            "/webhooks/wompi",
            content=json.dumps(tampered).encode(),
            headers=headers,
        )

    assert response.status_code == 401
    process.assert_not_called()


@pytest.mark.asyncio
async def test_unsigned_delivery_is_rejected(webhook_client):
    response = await webhook_client.post("/webhooks/wompi", content=json.dumps(_approval()))
    assert response.status_code == 401
