import hmac

from fastapi import Depends, Header, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from autorenew.config import settings
from autorenew.db import get_db
from autorenew.services.subscribe_tokens import decode_subscribe_token

_bearer = HTTPBearer(auto_error=False)


def require_internal_key(x_internal_key: str | None = Header(default=None)) -> None:
    expected = settings.internal_api_key
    if not expected or not x_internal_key or not hmac.compare_digest(expected, x_internal_key):
        raise HTTPException(status_code=401, detail="Invalid internal API key")


def get_subscribe_principal(
    token: str | None = Query(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> dict:
    """Subscriber and plan carried by the subscribe token (query or bearer)."""
    raw = token or (credentials.credentials if credentials else None)
    return decode_subscribe_token(raw)


__all__ = [
    "get_db",
    "get_subscribe_principal",
    "require_internal_key",
]
