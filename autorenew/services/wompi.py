"""Wompi payment gateway integration service."""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from autorenew.config import settings
from autorenew.services.billing.exceptions import GatewayError, NetworkTimeout

logger = logging.getLogger(__name__)

# Transaction statuses reported by Wompi
APPROVED = "APPROVED"
DECLINED = "DECLINED"
ERROR = "ERROR"
VOIDED = "VOIDED"
PENDING = "PENDING"

FINAL_STATUSES = frozenset({APPROVED, DECLINED, ERROR, VOIDED})


def _private_headers() -> dict[str, str]:
    if not settings.wompi_private_key:
        raise GatewayError("Wompi private key is not configured")
    return {"Authorization": f"Bearer {settings.wompi_private_key}"}


def _send(method: str, path: str, **kwargs) -> dict[str, Any]:
    """Issue a gateway call and return the ``data`` envelope.

    Transport failures, timeouts and non-2xx answers all surface as
    ``GatewayError`` (``NetworkTimeout`` for timeouts).
    """
    url = f"{settings.wompi_api_base}{path}"
    call = httpx.get if method == "GET" else httpx.post
    try:
        resp = call(url, timeout=settings.wompi_timeout_seconds, **kwargs)
        resp.raise_for_status()
    except httpx.TimeoutException as exc:
        logger.warning("wompi_timeout method=%s path=%s", method, path)
        raise NetworkTimeout(f"Wompi request timed out: {method} {path}") from exc
    except httpx.HTTPStatusError as exc:
        body = _safe_json(exc.response)
        logger.error(
            "wompi_http_error method=%s path=%s status=%s",
            method,
            path,
            exc.response.status_code,
        )
        raise GatewayError(
            f"Wompi returned HTTP {exc.response.status_code}", detail=body
        ) from exc
    except httpx.HTTPError as exc:
        logger.error("wompi_transport_error method=%s path=%s error=%s", method, path, exc)
        raise GatewayError(f"Wompi request failed: {exc}") from exc

    payload = _safe_json(resp)
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise GatewayError("Wompi response missing data", detail=payload)
    return data


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}


def amount_to_cents(amount) -> int:
    """Convert a peso amount to cents (COP × 100)."""
    return int(Decimal(str(amount)) * 100)


def customer_email_for(subscriber_id: str) -> str:
    return f"{subscriber_id}@{settings.customer_email_domain}"


def get_acceptance_token() -> dict[str, str]:
    """Fetch the merchant's presigned acceptance token.

    Returns:
        Dict with ``acceptance_token`` and ``permalink``.
    """
    if not settings.wompi_public_key:
        raise GatewayError("Wompi public key is not configured")
    data = _send("GET", f"/merchants/{settings.wompi_public_key}")
    presigned = data.get("presigned_acceptance") or {}
    token = presigned.get("acceptance_token")
    if not token:
        raise GatewayError("Wompi merchant response has no acceptance token", detail=data)
    return {"acceptance_token": token, "permalink": presigned.get("permalink", "")}


def create_payment_source(
    *, token: str, customer_email: str, acceptance_token: str
) -> dict[str, Any]:
    """Exchange a one-time card token for a durable payment source.

    Returns:
        Dict with ``id``, ``status`` and ``public_data`` (``type``, ``last_four``).
    """
    return _send(
        "POST",
        "/payment_sources",
        json={
            "type": "CARD",
            "token": token,
            "customer_email": customer_email,
            "acceptance_token": acceptance_token,
        },
        headers=_private_headers(),
    )


def _source_id_param(payment_source_id: str) -> int | str:
    # Wompi issues numeric source ids and expects them back as integers.
    return int(payment_source_id) if str(payment_source_id).isdigit() else payment_source_id


def create_transaction(
    *,
    amount_in_cents: int,
    currency: str,
    customer_email: str,
    reference: str,
    payment_source_id: str,
) -> dict[str, Any]:
    """Charge a stored payment source.

    Returns:
        Transaction dict with ``id``, ``status`` and ``status_message``.
    """
    return _send(
        "POST",
        "/transactions",
        json={
            "amount_in_cents": amount_in_cents,
            "currency": currency,
            "customer_email": customer_email,
            "reference": reference,
            "payment_source_id": _source_id_param(payment_source_id),
            "payment_method": {"installments": 1},
        },
        headers=_private_headers(),
    )


def get_transaction(transaction_id: str) -> dict[str, Any]:
    return _send("GET", f"/transactions/{transaction_id}", headers=_private_headers())


def create_payment_link(
    *,
    name: str,
    description: str,
    amount_in_cents: int,
    currency: str,
    redirect_url: str,
    expires_at: datetime,
    customer_email: str | None = None,
) -> dict[str, Any]:
    """Create a single-use hosted checkout link.

    Returns:
        Dict with the link ``id``; the checkout URL is ``checkout_url(id)``.
    """
    payload: dict[str, Any] = {
        "name": name,
        "description": description,
        "single_use": True,
        "collect_shipping": False,
        "currency": currency,
        "amount_in_cents": amount_in_cents,
        "redirect_url": redirect_url,
        "expires_at": expires_at.isoformat(),
    }
    if customer_email:
        payload["customer_data"] = {"customer_email": customer_email}
    return _send("POST", "/payment_links", json=payload, headers=_private_headers())


def checkout_url(payment_link_id: str) -> str:
    return f"https://checkout.wompi.co/l/{payment_link_id}"


def integrity_signature(reference: str, amount_in_cents: int, currency: str) -> str:
    """Integrity hash the checkout widget requires: sha256(reference + amount + currency + secret)."""
    raw = f"{reference}{amount_in_cents}{currency}{settings.wompi_integrity_secret}"
    return hashlib.sha256(raw.encode()).hexdigest()


def verify_webhook_signature(body: bytes, checksum: str | None, timestamp: str | None) -> bool:
    """Verify an event checksum: sha256(timestamp + raw body + events secret).

    Fails closed when no events secret is configured.
    """
    secret = settings.wompi_events_secret
    if not secret or not checksum or not timestamp:
        return False
    expected = hashlib.sha256(timestamp.encode() + body + secret.encode()).hexdigest()
    return hmac.compare_digest(expected, checksum.lower())
