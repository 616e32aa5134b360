import asyncio
import json
import os
import time
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone

# Before any backend module reads them
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_paywall.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("MIDTRANS_SERVER_KEY", "SB-Mid-server-test")

import pytest
from jose import jwt

from paywall.auth import BearerCredential
from paywall.config import Settings
from paywall.errors import BackendError, ConflictError
from paywall.models import CouponValidation, DiscountType, OrderStatus
from paywall.pricing import compute_discount
from paywall.scheduler import VirtualScheduler

PAYER = "user-1"


def _token(sub, expires_in=3600, secret=None):
    claims = {"sub": sub, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret or os.environ["JWT_SECRET"], algorithm="HS256")


@pytest.fixture
def make_token():
    return _token


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def scheduler():
    return VirtualScheduler()


class FakeBackend:
    """In-memory stand-in for BackendClient with the same async methods."""

    COUPONS = {
        "SAVE30": ("percentage", 30, "30%"),
        "WELCOME20": ("percentage", 20, "20%"),
        "FIXED5000": ("fixed", 5000, "Rp 5.000"),
    }

    def __init__(self, payer=PAYER):
        self.credential = BearerCredential(token=_token(payer))
        self.orders = {}
        self.calls = Counter()
        self.status = "pending"
        self.status_errors = []
        self.token_error = None
        self._tokens = 0

    def _price(self, order, base_amount, coupon_code):
        discount = 0
        order["coupon"] = None
        if coupon_code:
            discount_type, value, display = self.COUPONS[coupon_code]
            discount = compute_discount(base_amount, DiscountType(discount_type), value)
            order["coupon"] = {
                "code": coupon_code,
                "discount_type": discount_type,
                "display_discount": display,
            }
        order["original_amount"] = f"{base_amount}.00"
        order["coupon_discount_amount"] = f"{discount}.00"
        order["amount"] = f"{base_amount - discount}.00"

    async def create_order(self, product_ref, coupon_code=None):
        self.calls["create_order"] += 1
        await asyncio.sleep(0)
        existing = self.orders.get(product_ref.key)
        if existing is not None and existing["status"] in ("pending", "paid"):
            current = (existing["coupon"] or {}).get("code")
            if coupon_code and existing["status"] == "pending" and coupon_code != current:
                self._price(existing, product_ref.product.base_amount, coupon_code)
            raise ConflictError(product_ref=product_ref)

        now = datetime.now(timezone.utc)
        order = {
            "id": str(uuid.uuid4()),
            "order_number": f"ORD-{len(self.orders) + 1:04d}",
            "status": "pending",
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(hours=1)).isoformat(),
        }
        self._price(order, product_ref.product.base_amount, coupon_code)
        self.orders[product_ref.key] = order
        return dict(order)

    async def get_existing_order(self, product_ref):
        self.calls["get_existing_order"] += 1
        order = self.orders.get(product_ref.key)
        if order is None:
            raise BackendError(404, "Order not found")
        return dict(order)

    async def get_payment_token(self, order_id):
        self.calls["get_payment_token"] += 1
        if self.token_error is not None:
            raise self.token_error
        order = next(o for o in self.orders.values() if o["id"] == order_id)
        self._tokens += 1
        snap_token = f"snap-{self._tokens}"
        return {
            "order_id": order_id,
            "snap_token": snap_token,
            "midtrans_response": json.dumps(
                {"redirect_url": f"https://app.sandbox.midtrans.com/snap/v4/redirection/{snap_token}"}
            ),
            "amount": order["amount"],
            "status": "pending",
        }

    async def get_order_status(self, order_id):
        self.calls["get_order_status"] += 1
        await asyncio.sleep(0)
        if self.status_errors:
            raise self.status_errors.pop(0)
        return OrderStatus(self.status)

    async def validate_coupon(self, code, amount, product_kind=None):
        self.calls["validate_coupon"] += 1
        if code not in self.COUPONS:
            return CouponValidation.from_api({
                "valid": False,
                "message": "Invalid coupon code. Please check and try again.",
                "coupon": None,
                "pricing": {"original_amount": amount, "discount_amount": "0", "final_amount": str(amount)},
            })
        discount_type, value, display = self.COUPONS[code]
        discount = compute_discount(amount, DiscountType(discount_type), value)
        return CouponValidation.from_api({
            "valid": True,
            "message": "Coupon applied",
            "coupon": {"code": code, "discount_type": discount_type, "display_discount": display},
            "pricing": {
                "original_amount": amount,
                "discount_amount": f"{discount}.00",
                "final_amount": f"{amount - discount}.00",
            },
        })


@pytest.fixture
def backend():
    return FakeBackend()


class FakeWidget:
    def __init__(self):
        self.payments = []

    def pay(self, session_token, callbacks):
        self.payments.append((session_token, callbacks))

    @property
    def callbacks(self):
        return self.payments[-1][1]


@pytest.fixture
def widget():
    return FakeWidget()
