"""Short-lived tokens authorizing the subscribe page for one subscriber and plan."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, cast

from jose import JWTError, jwt

from autorenew.config import settings
from autorenew.services.billing.exceptions import AuthenticationFailure
from autorenew.services.billing.plans import get_plan
from autorenew.services.common import utc_now

TOKEN_TYPE = "subscribe"
ALGORITHM = "HS256"


def issue_subscribe_token(
    subscriber_id: str, plan_id: str, now: datetime | None = None
) -> str:
    get_plan(plan_id)
    now = now or utc_now()
    payload = {
        "sub": subscriber_id,
        "plan_id": plan_id,
        "typ": TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(
            (now + timedelta(minutes=settings.subscribe_token_ttl_minutes)).timestamp()
        ),
    }
    return cast(str, jwt.encode(payload, settings.subscribe_token_secret, algorithm=ALGORITHM))


def decode_subscribe_token(token: str | None) -> dict[str, Any]:
    """Return ``{"subscriber_id", "plan_id"}`` for a valid token.

    Raises:
        AuthenticationFailure: missing, expired, tampered or wrong-type token.
    """
    if not token:
        raise AuthenticationFailure("Subscribe token is required")
    try:
        payload = cast(
            dict[Any, Any],
            jwt.decode(token, settings.subscribe_token_secret, algorithms=[ALGORITHM]),
        )
    except JWTError as exc:
        raise AuthenticationFailure("Invalid or expired subscribe token") from exc
    if payload.get("typ") != TOKEN_TYPE or not payload.get("sub"):
        raise AuthenticationFailure("Invalid subscribe token type")
    return {"subscriber_id": payload["sub"], "plan_id": payload.get("plan_id")}


def subscribe_url(subscriber_id: str, plan_id: str) -> str:
    token = issue_subscribe_token(subscriber_id, plan_id)
    return f"{settings.subscribe_base_url.rstrip('/')}/subscribe?token={token}"
