"""
Error taxonomy for the purchase/unlock flow.

Only CouponRejected, FatalPaymentError, AuthenticationError and BackendError
are meant to reach the user. ConflictError is recovered inside the order
coordinator, GatewayUnavailable switches the gateway session to the redirect
fallback and TransientNetworkError is absorbed by the scheduled checks.
"""


class PaywallError(Exception):
    """Base class for every error raised by paywall."""


class ValidationError(PaywallError):
    """Input rejected by the backend; no state was changed."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CouponRejected(ValidationError):
    """
    The backend refused a coupon code.

    `message` is the backend's reason, verbatim. `quote` is the no-discount
    quote for the same base amount so callers can keep displaying a price.
    """

    def __init__(self, code: str, message: str, quote):
        super().__init__(message)
        self.code = code
        self.quote = quote


class ConflictError(PaywallError):
    """An order already exists for this product/payer (ORDER_ALREADY_EXISTS)."""

    def __init__(self, message: str = "Order already exists", product_ref=None):
        super().__init__(message)
        self.product_ref = product_ref


class TransientNetworkError(PaywallError):
    """Connect/read failure, timeout or 5xx. Safe to retry."""


class GatewayUnavailable(PaywallError):
    """The hosted payment widget could not be loaded."""


class FatalPaymentError(PaywallError):
    """The gateway reported a failed payment; the user has to start over."""

    def __init__(self, message: str = "Payment failed. Please try again.", detail=None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class AuthenticationError(PaywallError):
    """Bearer credential missing, expired or refused (HTTP 401)."""


class BackendError(PaywallError):
    """Non-2xx backend response that none of the other errors describe."""

    def __init__(self, status_code: int, message: str, code: str | None = None):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.code = code


class ContentLocked(PaywallError):
    """Premium content requested before the order was confirmed paid."""
