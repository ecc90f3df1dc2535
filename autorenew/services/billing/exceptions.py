"""Billing error taxonomy.

``GatewayDeclined``, ``GatewayError`` and ``NetworkTimeout`` share one retry
policy; the distinction only matters for logs and ``error_detail``.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for recurring billing failures."""

    code = "billing_error"

    def __init__(self, message: str, *, detail: object | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class NoPaymentMethod(BillingError):
    """Subscriber has no active payment source. Never retried."""

    code = "no_payment_method"


class UnknownPlan(BillingError):
    code = "unknown_plan"


class TokenizationError(BillingError):
    """Gateway refused to turn a card token into a payment source."""

    code = "tokenization_failed"


class GatewayDeclined(BillingError):
    code = "gateway_declined"


class GatewayError(BillingError):
    code = "gateway_error"


class NetworkTimeout(GatewayError):
    code = "network_timeout"


class AuthenticationFailure(BillingError):
    code = "authentication_failed"


class MaxRetriesExceeded(BillingError):
    code = "max_retries_exceeded"


class ReferenceFormatError(BillingError, ValueError):
    code = "malformed_reference"
