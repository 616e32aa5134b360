import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from paywall.backend.auth import verify_token
from paywall.backend.database import get_db
from paywall.backend.gateway_service import create_transaction, midtrans_response
from paywall.backend.models import Coupon, Order, PaymentToken
from paywall.models import DiscountType, parse_amount
from paywall.pricing import compute_discount
from paywall.products import PRODUCTS, PRODUCTS_BY_SEGMENT, ProductDescriptor

logger = structlog.get_logger(__name__)

router = APIRouter()

ORDER_ALREADY_EXISTS = "ORDER_ALREADY_EXISTS"
COUPON_REJECTED = "COUPON_REJECTED"

INVALID_COUPON = "Invalid coupon code. Please check and try again."
EXPIRED_COUPON = "This coupon has expired."
INAPPLICABLE_COUPON = "This coupon cannot be used for this test."

LIVE_STATUSES = ("pending", "paid")


class CreateOrderRequest(BaseModel):
    coupon_code: Optional[str] = None


class CouponValidationRequest(BaseModel):
    coupon_code: str
    amount: str
    test_type: Optional[str] = None


def envelope(data, status: str = "ok") -> dict:
    return {"data": data, "status": status, "error": False}


def _now() -> datetime:
    # Stored naive, in UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def _money(amount: int) -> str:
    return f"{amount}.00"


def _order_ttl() -> timedelta:
    return timedelta(minutes=float(os.getenv("ORDER_TTL_MINUTES", "60")))


def _normalize_code(code: Optional[str]) -> Optional[str]:
    code = (code or "").strip().upper()
    return code or None


def serialize_coupon(coupon: Optional[Coupon]) -> Optional[dict]:
    if coupon is None:
        return None
    return {
        "code": coupon.code,
        "discount_type": coupon.discount_type,
        "display_discount": coupon.display_discount,
    }


def serialize_order(order: Order) -> dict:
    product = PRODUCTS.get(order.product_kind)
    original = order.original_amount or order.amount
    return {
        "id": order.id,
        "order_number": order.order_number,
        "amount": _money(order.amount),
        "status": order.status,
        "created_at": _iso(order.created_at),
        "expires_at": _iso(order.expires_at),
        "description": product.display_name if product else order.product_kind,
        "test_type": order.product_kind,
        "testable": {"id": order.instance_id, "type": order.product_kind},
        "can_download_certificate": order.status == "paid",
        "original_amount": _money(original),
        "coupon_discount_amount": _money(order.discount_amount or 0),
        "coupon": serialize_coupon(order.coupon),
        "pricing": {
            "final_amount": _money(order.amount),
            "has_discount": bool(order.discount_amount),
            "discount_percentage": round(100 * (order.discount_amount or 0) / original) if original else 0,
        },
    }


def serialize_token(token: PaymentToken) -> dict:
    return {
        "id": token.id,
        "snap_token": token.snap_token,
        "order_id": token.order_id,
        "midtrans_order_id": token.gateway_order_id,
        "status": token.status,
        "amount": _money(token.amount),
        "expires_at": _iso(token.expires_at),
        "midtrans_response": token.midtrans_response,
    }


def _product_or_404(segment: str) -> ProductDescriptor:
    product = PRODUCTS_BY_SEGMENT.get(segment)
    if product is None:
        raise HTTPException(status_code=404, detail="Unknown product")
    return product


def expire_if_stale(db: Session, order: Order) -> Order:
    if order.status == "pending" and order.expires_at is not None and order.expires_at <= _now():
        order.status = "expired"
        for token in order.tokens:
            token.status = "expired"
        db.commit()
        logger.info("order_expired", order_id=order.id)
    return order


def check_coupon(db: Session, code: str, product_kind: Optional[str]) -> tuple[Optional[Coupon], str]:
    """Return (coupon, "") when usable, (None, reason) otherwise."""
    coupon = db.get(Coupon, code)
    if coupon is None or not coupon.active:
        return None, INVALID_COUPON
    if coupon.expires_at is not None and coupon.expires_at <= _now():
        return None, EXPIRED_COUPON
    if coupon.products and product_kind and product_kind not in coupon.products.split(","):
        return None, INAPPLICABLE_COUPON
    return coupon, ""


def _discount_for(coupon: Optional[Coupon], base_amount: int) -> int:
    if coupon is None:
        return 0
    return compute_discount(base_amount, DiscountType(coupon.discount_type), coupon.value)


def _apply_pricing(order: Order, product: ProductDescriptor, coupon: Optional[Coupon]) -> None:
    discount = _discount_for(coupon, product.base_amount)
    order.original_amount = product.base_amount
    order.discount_amount = discount
    order.amount = max(0, product.base_amount - discount)
    order.coupon_code = coupon.code if coupon else None


def _resolve_coupon_or_422(db: Session, code: Optional[str], product: ProductDescriptor) -> Optional[Coupon]:
    if code is None:
        return None
    coupon, reason = check_coupon(db, code, product.kind)
    if coupon is None:
        raise HTTPException(status_code=422, detail={"code": COUPON_REJECTED, "message": reason})
    return coupon


def _live_order(db: Session, product: ProductDescriptor, instance_id: str, payer_ref: str) -> Optional[Order]:
    orders = (
        db.query(Order)
        .filter_by(product_kind=product.kind, instance_id=instance_id, payer_ref=payer_ref)
        .filter(Order.status.in_(LIVE_STATUSES))
        .order_by(Order.created_at.desc())
        .all()
    )
    for order in orders:
        if expire_if_stale(db, order).status in LIVE_STATUSES:
            return order
    return None


@router.post("/users/{segment}/{instance_id}/orders", status_code=201)
def create_order(
    segment: str,
    instance_id: str,
    request: CreateOrderRequest,
    payer_ref: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    product = _product_or_404(segment)
    code = _normalize_code(request.coupon_code)

    existing = _live_order(db, product, instance_id, payer_ref)
    if existing:
        if existing.status == "pending" and code is not None and code != existing.coupon_code:
            coupon = _resolve_coupon_or_422(db, code, product)
            _apply_pricing(existing, product, coupon)
            # Tokens were issued for the old amount
            existing.tokens.clear()
            db.commit()
            logger.info("order_repriced", order_id=existing.id, coupon_code=code, amount=existing.amount)
        return JSONResponse(
            status_code=409,
            content={
                "code": ORDER_ALREADY_EXISTS,
                "message": "An order already exists for this test",
                "error": True,
            },
        )

    coupon = _resolve_coupon_or_422(db, code, product)
    now = _now()
    order = Order(
        id=str(uuid.uuid4()),
        order_number=f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}",
        product_kind=product.kind,
        instance_id=instance_id,
        payer_ref=payer_ref,
        status="pending",
        created_at=now,
        expires_at=now + _order_ttl(),
    )
    _apply_pricing(order, product, coupon)

    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("order_created", order_id=order.id, product=product.kind, amount=order.amount)

    return envelope(serialize_order(order), status="created")


@router.get("/users/{segment}/{instance_id}/orders")
def get_existing_order(
    segment: str,
    instance_id: str,
    payer_ref: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    product = _product_or_404(segment)
    order = _live_order(db, product, instance_id, payer_ref)
    if order is None:
        # Fall back to the latest closed one so callers can see why
        order = (
            db.query(Order)
            .filter_by(product_kind=product.kind, instance_id=instance_id, payer_ref=payer_ref)
            .order_by(Order.created_at.desc())
            .first()
        )
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return envelope(serialize_order(order))


def _own_order_or_404(db: Session, order_id: str, payer_ref: str) -> Order:
    order = db.get(Order, order_id)
    if order is None or order.payer_ref != payer_ref:
        raise HTTPException(status_code=404, detail="Order not found")
    return expire_if_stale(db, order)


@router.post("/orders/{order_id}/payment_token")
def get_payment_token(
    order_id: str,
    payer_ref: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _own_order_or_404(db, order_id, payer_ref)
    if order.status != "pending":
        raise HTTPException(
            status_code=409,
            detail={"code": "ORDER_NOT_PENDING", "message": f"Order is {order.status}"},
        )

    now = _now()
    for token in order.tokens:
        if token.status == "pending" and token.amount == order.amount and token.expires_at > now:
            return envelope(serialize_token(token))

    gateway_order_id = f"{order.order_number}-{uuid.uuid4().hex[:6].upper()}"
    transaction = create_transaction(gateway_order_id, order.amount, payer_ref)
    token = PaymentToken(
        id=str(uuid.uuid4()),
        order_id=order.id,
        gateway_order_id=gateway_order_id,
        snap_token=transaction["token"],
        amount=order.amount,
        status="pending",
        midtrans_response=midtrans_response(transaction),
        created_at=now,
        expires_at=order.expires_at,
    )
    db.add(token)
    db.commit()
    db.refresh(token)
    logger.info("payment_token_issued", order_id=order.id, gateway_order_id=gateway_order_id)

    return envelope(serialize_token(token))


@router.get("/orders/{order_id}")
def get_order(
    order_id: str,
    payer_ref: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = _own_order_or_404(db, order_id, payer_ref)
    return envelope(serialize_order(order))


@router.post("/coupons/validate")
def validate_coupon(
    request: CouponValidationRequest,
    payer_ref: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    try:
        amount = parse_amount(request.amount)
    except ValueError:
        raise HTTPException(status_code=422, detail="Invalid amount")

    code = _normalize_code(request.coupon_code)
    coupon, reason = check_coupon(db, code, request.test_type) if code else (None, INVALID_COUPON)
    discount = _discount_for(coupon, amount)

    return envelope(
        {
            "valid": coupon is not None,
            "message": "Coupon applied" if coupon is not None else reason,
            "coupon": serialize_coupon(coupon),
            "pricing": {
                "original_amount": amount,
                "discount_amount": _money(discount),
                "final_amount": _money(max(0, amount - discount)),
            },
        }
    )


DEFAULT_COUPONS = (
    ("SAVE30", "percentage", 30, "30%"),
    ("WELCOME20", "percentage", 20, "20%"),
    ("FIXED5000", "fixed", 5000, "Rp 5.000"),
)


def seed_coupons(db: Session) -> None:
    for code, discount_type, value, display in DEFAULT_COUPONS:
        if db.get(Coupon, code) is None:
            db.add(Coupon(code=code, discount_type=discount_type, value=value,
                          display_discount=display, active=True))
    db.commit()
