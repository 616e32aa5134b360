from decimal import Decimal, ROUND_HALF_UP

import structlog

from paywall.client import BackendClient
from paywall.errors import CouponRejected
from paywall.models import DiscountType, PricingQuote

logger = structlog.get_logger(__name__)


def compute_discount(base_amount: int, discount_type: DiscountType, value) -> int:
    """Discount for `value` percent or `value` IDR off, never above the base."""
    value = Decimal(str(value))
    if discount_type is DiscountType.PERCENTAGE:
        discount = Decimal(base_amount) * value / Decimal(100)
    else:
        discount = value
    discount = int(discount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return min(max(discount, 0), base_amount)


class PricingNegotiator:
    """
    Turns a base amount and an optional coupon code into a PricingQuote.

    Read-only with respect to orders: the only backend call is coupon
    validation, so quoting any number of codes never creates or changes an
    Order.
    """

    def __init__(self, client: BackendClient, product_kind: str | None = None):
        self.client = client
        self.product_kind = product_kind

    async def quote(self, base_amount: int, coupon_code: str | None = None) -> PricingQuote:
        code = (coupon_code or "").strip()
        if not code:
            return PricingQuote.undiscounted(base_amount)

        result = await self.client.validate_coupon(code, base_amount, self.product_kind)
        if not result.valid:
            logger.info("coupon_rejected", coupon_code=code, reason=result.message)
            raise CouponRejected(code, result.message, PricingQuote.undiscounted(base_amount))

        quote = PricingQuote.derive(base_amount, result.discount_amount, result.coupon)
        if result.final_amount != quote.final_amount:
            logger.warning(
                "coupon_final_amount_mismatch",
                coupon_code=code,
                backend_final=result.final_amount,
                derived_final=quote.final_amount,
            )
        logger.info(
            "coupon_applied",
            coupon_code=code,
            original_amount=quote.original_amount,
            discount_amount=quote.discount_amount,
            final_amount=quote.final_amount,
        )
        return quote
