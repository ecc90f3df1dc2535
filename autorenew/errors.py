from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from autorenew.services.billing.exceptions import (
    AuthenticationFailure,
    BillingError,
    GatewayDeclined,
    GatewayError,
    MaxRetriesExceeded,
    NoPaymentMethod,
    ReferenceFormatError,
    TokenizationError,
    UnknownPlan,
)

logger = logging.getLogger(__name__)

# Most specific first; subclasses of GatewayError map with their parent.
BILLING_ERROR_STATUS: list[tuple[type[BillingError], int]] = [
    (NoPaymentMethod, 409),
    (UnknownPlan, 400),
    (TokenizationError, 400),
    (ReferenceFormatError, 400),
    (AuthenticationFailure, 401),
    (GatewayDeclined, 402),
    (MaxRetriesExceeded, 409),
    (GatewayError, 502),
]


def _error_payload(code: str, message: str, details: object, request_id: str | None):
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def billing_error_status(exc: BillingError) -> int:
    for exc_type, status_code in BILLING_ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 400


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    return str(value)


def register_error_handlers(app) -> None:
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        status_code = billing_error_status(exc)
        logger.info(
            "billing_error code=%s status=%s path=%s", exc.code, status_code, request.url.path
        )
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(
                exc.code, exc.message, _json_safe(exc.detail), _request_id(request)
            ),
        )

    async def _handle_http_exception(request: Request, status_code: int, detail: object):
        code = f"http_{status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=status_code,
            content=_error_payload(code, message, details, _request_id(request)),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(request, exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(request, exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [_json_safe(dict(error)) for error in exc.errors()]
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error", "Validation error", errors, _request_id(request)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error", "Internal server error", None, _request_id(request)
            ),
        )
