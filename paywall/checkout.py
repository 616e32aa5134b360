"""
Purchase flow for one product instance and one payer.

    checkout = Checkout(BEHAVIORAL, test_id, client, gateway=session)
    quote = await checkout.quote("SAVE30")
    await checkout.purchase("SAVE30")
    ...
    if checkout.unlock_state.unlocked:
        show_results()
    await checkout.aclose()

All products share this flow; a ProductDescriptor supplies the backend path
and the base price.
"""
from collections.abc import Callable

import structlog

from paywall.client import BackendClient
from paywall.config import Settings, get_settings
from paywall.errors import FatalPaymentError
from paywall.gateway import GatewayHandlers, PaymentGatewaySession
from paywall.models import Order, OrderStatus, PricingQuote
from paywall.orders import OrderCoordinator
from paywall.pricing import PricingNegotiator
from paywall.products import ProductDescriptor, ProductRef
from paywall.reconciler import ConfirmationReconciler, Resolution
from paywall.scheduler import AsyncioScheduler, Scheduler
from paywall.unlock import ResultUnlockState

logger = structlog.get_logger(__name__)


class Checkout:
    def __init__(
        self,
        product: ProductDescriptor,
        instance_id: str,
        client: BackendClient,
        payer_ref: str | None = None,
        gateway: PaymentGatewaySession | None = None,
        orders: OrderCoordinator | None = None,
        scheduler: Scheduler | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.product_ref = ProductRef(product, instance_id)
        self.payer_ref = payer_ref or client.credential.payer_ref
        if not self.payer_ref:
            raise ValueError("payer_ref is required when the credential carries no subject")

        self.client = client
        self.pricing = PricingNegotiator(client, product.kind)
        # Share one coordinator between checkouts to share its in-flight guard
        self.orders = orders or OrderCoordinator(client)
        self.gateway = gateway or PaymentGatewaySession(settings=self.settings)
        self.scheduler = scheduler or AsyncioScheduler()
        self._owns_scheduler = scheduler is None
        self.unlock_state = ResultUnlockState()
        self.reconciler: ConfirmationReconciler | None = None
        self._listeners: list[Callable[[Resolution], None]] = []

        self.log = logger.bind(product=self.product_ref.key, payer=self.payer_ref)

    @property
    def order(self) -> Order | None:
        return self.orders.cached(self.product_ref, self.payer_ref)

    def subscribe(self, callback: Callable[[Resolution], None]) -> None:
        self._listeners.append(callback)

    async def quote(self, coupon_code: str | None = None) -> PricingQuote:
        return await self.pricing.quote(self.product_ref.product.base_amount, coupon_code)

    async def purchase(self, coupon_code: str | None = None) -> Order:
        """
        Create or reuse the order, then open the payment widget.

        Returns once the widget (or redirect page) is open; the outcome arrives
        later through unlock_state and subscribe().
        """
        if self.unlock_state.unlocked and self.order is not None:
            return self.order

        order = await self.orders.ensure_order(self.product_ref, self.payer_ref, coupon_code)
        reconciler = self._reconciler_for(order)

        if order.status is OrderStatus.PAID:
            # Paid elsewhere (another tab, a late webhook); confirm before unlocking
            await reconciler.check_now()
            return order
        if not order.is_pending:
            self.orders.forget(self.product_ref, self.payer_ref)
            raise FatalPaymentError(f"Order is {order.status.value}. Please start again.")

        token = await self.orders.payment_token(order)
        await self.gateway.open(token, GatewayHandlers.for_reconciler(reconciler))
        self.log.info("purchase_started", order_id=order.id, mode=self.gateway.mode)
        return order

    async def refresh(self) -> bool:
        """Authoritative check for an existing order (e.g. on page load)."""
        if self.unlock_state.unlocked:
            return True
        order = self.order or await self.orders.lookup(self.product_ref, self.payer_ref)
        if order is None:
            return False
        await self._reconciler_for(order).check_now()
        return self.unlock_state.unlocked

    def _reconciler_for(self, order: Order) -> ConfirmationReconciler:
        if self.reconciler is not None:
            if self.reconciler.order_id == order.id and not self.reconciler.done:
                return self.reconciler
            self.reconciler.teardown()

        self.reconciler = ConfirmationReconciler(
            order.id,
            self.client,
            self.unlock_state,
            scheduler=self.scheduler,
            settings=self.settings,
        )
        self.reconciler.subscribe(self._on_resolution)
        return self.reconciler

    def _on_resolution(self, resolution: Resolution) -> None:
        if resolution.status is not None:
            self.orders.record_status(resolution.order_id, resolution.status)
        if resolution.status is OrderStatus.EXPIRED:
            self.orders.forget(self.product_ref, self.payer_ref)
        for callback in list(self._listeners):
            callback(resolution)

    def close(self) -> None:
        if self.reconciler is not None:
            self.reconciler.teardown()

    async def aclose(self) -> None:
        """close(), then shut down the scheduler if this checkout created it."""
        self.close()
        if self._owns_scheduler:
            await self.scheduler.shutdown()

    async def __aenter__(self) -> "Checkout":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
