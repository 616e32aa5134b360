import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any

from paywall.products import ProductRef


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Trigger(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    CLOSE = "close"
    MANUAL_POLL = "manualPoll"


def parse_amount(value: Any) -> int:
    """Backend amounts come as numbers or decimal strings ("21000.0")."""
    if value is None or value == "":
        return 0
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not an amount: {value!r}")
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Coupon:
    code: str
    discount_type: DiscountType
    display_discount: str

    @classmethod
    def from_api(cls, data: dict) -> "Coupon":
        return cls(
            code=data["code"],
            discount_type=DiscountType(data.get("discount_type", "percentage")),
            display_discount=str(data.get("display_discount", "")),
        )


@dataclass(frozen=True)
class PricingQuote:
    original_amount: int
    discount_amount: int
    final_amount: int
    coupon: Coupon | None = None

    @classmethod
    def derive(cls, original_amount: int, discount_amount: int, coupon: Coupon | None = None):
        # Never trust a final amount we did not compute ourselves
        discount_amount = max(0, discount_amount)
        return cls(
            original_amount=original_amount,
            discount_amount=discount_amount,
            final_amount=max(0, original_amount - discount_amount),
            coupon=coupon,
        )

    @classmethod
    def undiscounted(cls, amount: int) -> "PricingQuote":
        return cls(original_amount=amount, discount_amount=0, final_amount=amount)

    @property
    def has_discount(self) -> bool:
        return self.discount_amount > 0


@dataclass(frozen=True)
class Order:
    id: str
    product_ref: ProductRef
    payer_ref: str
    amount: int
    status: OrderStatus
    created_at: datetime | None
    expires_at: datetime | None
    coupon_code: str | None = None
    order_number: str | None = None
    original_amount: int | None = None
    discount_amount: int = 0

    @classmethod
    def from_api(cls, data: dict, product_ref: ProductRef, payer_ref: str) -> "Order":
        coupon = data.get("coupon") or None
        return cls(
            id=str(data["id"]),
            product_ref=product_ref,
            payer_ref=payer_ref,
            amount=parse_amount(data.get("amount")),
            status=OrderStatus(data.get("status", "pending")),
            created_at=parse_datetime(data.get("created_at")),
            expires_at=parse_datetime(data.get("expires_at")),
            coupon_code=coupon["code"] if coupon else None,
            order_number=data.get("order_number"),
            original_amount=(
                parse_amount(data["original_amount"]) if data.get("original_amount") else None
            ),
            discount_amount=parse_amount(data.get("coupon_discount_amount")),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.status is OrderStatus.EXPIRED:
            return True
        if self.status is not OrderStatus.PENDING or self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    @property
    def is_pending(self) -> bool:
        return self.status is OrderStatus.PENDING


@dataclass(frozen=True)
class PaymentToken:
    order_id: str
    session_token: str
    gateway_session_payload: str
    amount: int
    status: str
    # Coupon of the order at the time the token was issued
    coupon_code: str | None = None

    @classmethod
    def from_api(cls, data: dict, coupon_code: str | None = None) -> "PaymentToken":
        payload = data.get("midtrans_response") or "{}"
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        return cls(
            order_id=str(data["order_id"]),
            session_token=data["snap_token"],
            gateway_session_payload=payload,
            amount=parse_amount(data.get("amount")),
            status=data.get("status", "pending"),
            coupon_code=coupon_code,
        )

    @property
    def redirect_url(self) -> str | None:
        try:
            payload = json.loads(self.gateway_session_payload)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        return payload.get("redirect_url") or None


@dataclass(frozen=True)
class ConfirmationAttempt:
    """Audit record of one authoritative status check."""

    trigger: Trigger
    timestamp: float
    observed_status: OrderStatus | None
    error: str | None = None


@dataclass
class CouponValidation:
    """Raw answer of validateCoupon."""

    valid: bool
    message: str
    coupon: Coupon | None
    original_amount: int
    discount_amount: int
    final_amount: int
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict) -> "CouponValidation":
        pricing = data.get("pricing") or {}
        coupon = data.get("coupon")
        return cls(
            valid=bool(data.get("valid")),
            message=data.get("message", ""),
            coupon=Coupon.from_api(coupon) if coupon else None,
            original_amount=parse_amount(pricing.get("original_amount")),
            discount_amount=parse_amount(pricing.get("discount_amount")),
            final_amount=parse_amount(pricing.get("final_amount")),
            raw=data,
        )
