"""
Idempotent order creation.

ensure_order() always converges on the single live order the backend holds
for a (product instance, payer) pair:

    create_order ──ok──────────────────────────────► Order
         │
         └─ ORDER_ALREADY_EXISTS ─► get_existing_order ─► Order (+ token prefetch)

Concurrent calls for the same pair share one in-flight request instead of
racing the backend's uniqueness check.
"""
import asyncio
import dataclasses

import structlog

from paywall.client import BackendClient
from paywall.errors import BackendError, ConflictError, PaywallError
from paywall.models import Order, OrderStatus, PaymentToken
from paywall.products import ProductRef

logger = structlog.get_logger(__name__)

OrderKey = tuple[str, str]


def _normalize_coupon(code: str | None) -> str | None:
    return (code or "").strip().upper() or None


class OrderCoordinator:
    def __init__(self, client: BackendClient):
        self.client = client
        self._orders: dict[OrderKey, Order] = {}
        self._tokens: dict[str, PaymentToken] = {}
        # Only ensure_order() writes here
        self._inflight: dict[OrderKey, tuple[asyncio.Task, str | None]] = {}

    @staticmethod
    def _key(product_ref: ProductRef, payer_ref: str) -> OrderKey:
        return (product_ref.key, payer_ref)

    def cached(self, product_ref: ProductRef, payer_ref: str) -> Order | None:
        return self._orders.get(self._key(product_ref, payer_ref))

    def cached_token(self, order_id: str) -> PaymentToken | None:
        return self._tokens.get(order_id)

    def forget(self, product_ref: ProductRef, payer_ref: str) -> None:
        order = self._orders.pop(self._key(product_ref, payer_ref), None)
        if order is not None:
            self._tokens.pop(order.id, None)

    async def lookup(self, product_ref: ProductRef, payer_ref: str) -> Order | None:
        """Fetch the existing order without creating one. None if there is none."""
        try:
            data = await self.client.get_existing_order(product_ref)
        except BackendError as e:
            if e.status_code == 404:
                return None
            raise
        return self._remember(
            self._key(product_ref, payer_ref), Order.from_api(data, product_ref, payer_ref)
        )

    async def ensure_order(
        self, product_ref: ProductRef, payer_ref: str, coupon_code: str | None = None
    ) -> Order:
        """
        Create the order for this product/payer, or fetch the one that exists.

        Callers arriving while a request for the same pair and coupon is in
        flight get that request's result. A caller with a different coupon
        waits for it to finish, then sends its own request so the backend
        re-prices the order.
        """
        key = self._key(product_ref, payer_ref)
        coupon = _normalize_coupon(coupon_code)
        while key in self._inflight:
            task, inflight_coupon = self._inflight[key]
            if inflight_coupon == coupon:
                logger.info("order_request_joined", product=product_ref.key, payer=payer_ref)
                return await asyncio.shield(task)
            logger.info(
                "order_request_queued",
                product=product_ref.key,
                payer=payer_ref,
                coupon_code=coupon,
                inflight_coupon=inflight_coupon,
            )
            # Its outcome belongs to its own caller
            await asyncio.wait({task})

        task = asyncio.ensure_future(self._ensure(product_ref, payer_ref, coupon_code))
        self._inflight[key] = (task, coupon)
        task.add_done_callback(lambda t: self._release(key, t))
        return await asyncio.shield(task)

    def _release(self, key: OrderKey, task: asyncio.Task) -> None:
        entry = self._inflight.get(key)
        if entry is not None and entry[0] is task:
            del self._inflight[key]

    async def _ensure(
        self, product_ref: ProductRef, payer_ref: str, coupon_code: str | None
    ) -> Order:
        key = self._key(product_ref, payer_ref)
        cached = self._orders.get(key)
        if cached is not None and cached.is_expired():
            logger.info("order_expired_locally", order_id=cached.id)
            self.forget(product_ref, payer_ref)

        try:
            data = await self.client.create_order(product_ref, coupon_code)
        except ConflictError:
            data = await self.client.get_existing_order(product_ref)
            order = self._remember(key, Order.from_api(data, product_ref, payer_ref))
            logger.info(
                "order_conflict_recovered",
                order_id=order.id,
                status=order.status.value,
                coupon_code=order.coupon_code,
            )
            if order.is_pending:
                await self._prefetch_token(order)
            return order

        order = self._remember(key, Order.from_api(data, product_ref, payer_ref))
        logger.info(
            "order_created",
            order_id=order.id,
            product=product_ref.key,
            amount=order.amount,
            coupon_code=order.coupon_code,
        )
        return order

    async def _prefetch_token(self, order: Order) -> None:
        try:
            await self.payment_token(order)
        except PaywallError as e:
            # The order stays cached; payment_token() can be retried on its own
            logger.warning("payment_token_prefetch_failed", order_id=order.id, error=str(e))

    def _remember(self, key: OrderKey, order: Order) -> Order:
        previous = self._orders.get(key)
        if previous is not None and previous.id != order.id:
            self._tokens.pop(previous.id, None)
        if not order.is_pending:
            self._tokens.pop(order.id, None)
        self._orders[key] = order
        return order

    async def payment_token(self, order: Order) -> PaymentToken:
        """
        Token for paying `order`, cached per order.

        Re-issued when the order's coupon no longer matches the one the cached
        token was issued for.
        """
        if not order.is_pending:
            self._tokens.pop(order.id, None)
            raise BackendError(
                409, f"Order {order.id} is {order.status.value}; nothing to pay", "ORDER_NOT_PENDING"
            )

        token = self._tokens.get(order.id)
        if token is not None:
            if token.coupon_code == order.coupon_code:
                return token
            logger.info(
                "payment_token_invalidated",
                order_id=order.id,
                old_coupon=token.coupon_code,
                new_coupon=order.coupon_code,
            )
            del self._tokens[order.id]

        data = await self.client.get_payment_token(order.id)
        token = PaymentToken.from_api(data, coupon_code=order.coupon_code)
        self._tokens[order.id] = token
        logger.info("payment_token_issued", order_id=order.id, amount=token.amount)
        return token

    def record_status(self, order_id: str, status: OrderStatus) -> None:
        """Apply an authoritative status to the cached copy of an order."""
        for key, order in self._orders.items():
            if order.id == order_id:
                if order.status is not status:
                    self._orders[key] = dataclasses.replace(order, status=status)
                break
        if status is not OrderStatus.PENDING:
            self._tokens.pop(order_id, None)
