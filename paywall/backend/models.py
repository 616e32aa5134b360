from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from paywall.backend.database import Base


class Coupon(Base):
    __tablename__ = "coupons"

    code = Column(String, primary_key=True)
    discount_type = Column(String)                 # percentage | fixed
    value = Column(Integer)                        # percent, or IDR off
    display_discount = Column(String)
    active = Column(Boolean, default=True)
    expires_at = Column(DateTime, nullable=True)
    products = Column(String, nullable=True)       # comma separated kinds, NULL = all


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    order_number = Column(String, unique=True, index=True)
    product_kind = Column(String, index=True)
    instance_id = Column(String, index=True)
    payer_ref = Column(String, index=True)
    amount = Column(Integer)                       # final, after discount
    original_amount = Column(Integer)
    discount_amount = Column(Integer, default=0)
    coupon_code = Column(String, ForeignKey("coupons.code"), nullable=True)
    status = Column(String, default="pending")     # pending | paid | expired | failed
    created_at = Column(DateTime)
    expires_at = Column(DateTime)
    paid_at = Column(DateTime, nullable=True)

    coupon = relationship("Coupon")
    tokens = relationship("PaymentToken", back_populates="order", cascade="all, delete-orphan")


class PaymentToken(Base):
    __tablename__ = "payment_tokens"

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True)
    gateway_order_id = Column(String, unique=True, index=True)  # order_id on the Midtrans side
    snap_token = Column(String)
    amount = Column(Integer)
    status = Column(String, default="pending")
    midtrans_response = Column(Text)               # JSON, includes redirect_url
    created_at = Column(DateTime)
    expires_at = Column(DateTime)

    order = relationship("Order", back_populates="tokens")
