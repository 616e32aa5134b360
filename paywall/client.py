"""
Async HTTP client for the order/payment backend.

Maps transport and status-code failures onto the paywall error taxonomy:

    timeout / connection error / 5xx  -> TransientNetworkError
    401                               -> AuthenticationError
    409 ORDER_ALREADY_EXISTS          -> ConflictError
    422 COUPON_REJECTED               -> ValidationError (CouponRejected on create_order)
    any other non-2xx                 -> BackendError
"""
from typing import Any

import httpx
import structlog

from paywall.auth import BearerCredential
from paywall.config import get_settings
from paywall.errors import (
    AuthenticationError,
    BackendError,
    ConflictError,
    CouponRejected,
    TransientNetworkError,
    ValidationError,
)
from paywall.models import CouponValidation, OrderStatus, PricingQuote
from paywall.products import ProductRef

logger = structlog.get_logger(__name__)

ORDER_ALREADY_EXISTS = "ORDER_ALREADY_EXISTS"
COUPON_REJECTED = "COUPON_REJECTED"


def _error_fields(body: Any) -> tuple[str | None, str | None]:
    if not isinstance(body, dict):
        return None, None
    detail = body.get("detail")
    if isinstance(detail, dict):
        body = detail
    elif isinstance(detail, str):
        return body.get("code"), detail
    return body.get("code"), body.get("message")


class BackendClient:
    def __init__(
        self,
        credential: BearerCredential,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.credential = credential
        self._http = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout if timeout is not None else settings.http_timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, json: dict | None = None) -> Any:
        headers = self.credential.headers()
        try:
            response = await self._http.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("backend_timeout", method=method, path=path)
            raise TransientNetworkError(f"Timed out calling {path}") from e
        except httpx.TransportError as e:
            logger.warning("backend_unreachable", method=method, path=path, error=str(e))
            raise TransientNetworkError(f"Could not reach backend: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code == 401:
            raise AuthenticationError("Invalid or missing token")
        if response.status_code >= 500:
            logger.warning("backend_server_error", path=path, status=response.status_code)
            raise TransientNetworkError(f"Backend error {response.status_code} on {path}")
        if response.is_error:
            code, message = _error_fields(body)
            if response.status_code == 409 and code == ORDER_ALREADY_EXISTS:
                raise ConflictError(message or "Order already exists")
            if response.status_code == 422 and code == COUPON_REJECTED:
                raise ValidationError(message or "Coupon rejected")
            raise BackendError(response.status_code, message or response.reason_phrase, code)

        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def create_order(self, product_ref: ProductRef, coupon_code: str | None = None) -> dict:
        payload = {"coupon_code": coupon_code} if coupon_code else {}
        try:
            return await self._request("POST", product_ref.orders_path, json=payload)
        except ConflictError as e:
            e.product_ref = product_ref
            raise
        except ValidationError as e:
            raise CouponRejected(
                coupon_code, e.message, PricingQuote.undiscounted(product_ref.product.base_amount)
            ) from e

    async def get_existing_order(self, product_ref: ProductRef) -> dict:
        return await self._request("GET", product_ref.orders_path)

    async def get_payment_token(self, order_id: str) -> dict:
        return await self._request("POST", f"/orders/{order_id}/payment_token")

    async def get_order(self, order_id: str) -> dict:
        return await self._request("GET", f"/orders/{order_id}")

    async def get_order_status(self, order_id: str) -> OrderStatus:
        data = await self.get_order(order_id)
        return OrderStatus(data["status"])

    async def validate_coupon(
        self, code: str, amount: int, product_kind: str | None = None
    ) -> CouponValidation:
        payload = {"coupon_code": code, "amount": str(amount)}
        if product_kind:
            payload["test_type"] = product_kind
        data = await self._request("POST", "/coupons/validate", json=payload)
        return CouponValidation.from_api(data)
