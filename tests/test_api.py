import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from paywall.backend.main import app as fastapi_app
from paywall.backend.database import Base
from paywall.backend.gateway_service import notification_signature
from paywall.backend.models import Coupon, Order, PaymentToken
from paywall.backend.routes import seed_coupons
import paywall.backend.auth
import paywall.backend.database

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

ORDERS = "/api/v1/users/behavioral_learning_tests/test-42/orders"


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    seed_coupons(db)
    db.close()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    fastapi_app.dependency_overrides[paywall.backend.database.get_db] = override_get_db
    # Mock auth verification
    fastapi_app.dependency_overrides[paywall.backend.auth.verify_token] = lambda: "user-1"
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def test_create_order(client):
    response = client.post(ORDERS, json={})

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "created"
    assert body["error"] is False
    assert body["data"]["status"] == "pending"
    assert body["data"]["amount"] == "30000.00"
    assert body["data"]["test_type"] == "behavioral"
    assert body["data"]["coupon"] is None


def test_create_order_with_coupon(client):
    response = client.post(ORDERS, json={"coupon_code": "save30"})

    data = response.json()["data"]
    assert data["amount"] == "21000.00"
    assert data["original_amount"] == "30000.00"
    assert data["coupon_discount_amount"] == "9000.00"
    assert data["coupon"]["code"] == "SAVE30"
    assert data["pricing"]["discount_percentage"] == 30


def test_second_create_conflicts(client):
    first = client.post(ORDERS, json={}).json()["data"]

    response = client.post(ORDERS, json={})

    assert response.status_code == 409
    assert response.json()["code"] == "ORDER_ALREADY_EXISTS"
    existing = client.get(ORDERS).json()["data"]
    assert existing["id"] == first["id"]

    db = TestingSessionLocal()
    assert db.query(Order).count() == 1
    db.close()


def test_conflict_with_new_coupon_reprices(client):
    order = client.post(ORDERS, json={}).json()["data"]
    first_token = client.post(f"/api/v1/orders/{order['id']}/payment_token").json()["data"]

    response = client.post(ORDERS, json={"coupon_code": "FIXED5000"})

    assert response.status_code == 409
    repriced = client.get(f"/api/v1/orders/{order['id']}").json()["data"]
    assert repriced["amount"] == "25000.00"
    assert repriced["coupon"]["code"] == "FIXED5000"

    new_token = client.post(f"/api/v1/orders/{order['id']}/payment_token").json()["data"]
    assert new_token["snap_token"] != first_token["snap_token"]
    assert new_token["amount"] == "25000.00"


def test_create_order_with_invalid_coupon(client):
    response = client.post(ORDERS, json={"coupon_code": "NOPE"})

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "COUPON_REJECTED"
    assert response.json()["detail"]["message"] == "Invalid coupon code. Please check and try again."


def test_unknown_product(client):
    response = client.post("/api/v1/users/chess_tests/1/orders", json={})
    assert response.status_code == 404


def test_get_existing_order_not_found(client):
    assert client.get(ORDERS).status_code == 404


def test_payment_token_is_reused(client):
    order = client.post(ORDERS, json={}).json()["data"]

    first = client.post(f"/api/v1/orders/{order['id']}/payment_token")
    second = client.post(f"/api/v1/orders/{order['id']}/payment_token")

    assert first.status_code == 200
    token = first.json()["data"]
    assert token["snap_token"] == second.json()["data"]["snap_token"]
    assert token["midtrans_order_id"].startswith(order["order_number"])
    redirect = json.loads(token["midtrans_response"])["redirect_url"]
    assert redirect.endswith(token["snap_token"])


def test_payment_token_for_paid_order(client):
    order = client.post(ORDERS, json={}).json()["data"]
    db = TestingSessionLocal()
    db.get(Order, order["id"]).status = "paid"
    db.commit()
    db.close()

    response = client.post(f"/api/v1/orders/{order['id']}/payment_token")

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "ORDER_NOT_PENDING"


def test_order_of_another_user_is_hidden(client):
    order = client.post(ORDERS, json={}).json()["data"]
    fastapi_app.dependency_overrides[paywall.backend.auth.verify_token] = lambda: "user-2"

    assert client.get(f"/api/v1/orders/{order['id']}").status_code == 404


def test_pending_order_expires(client):
    order = client.post(ORDERS, json={}).json()["data"]
    db = TestingSessionLocal()
    db.get(Order, order["id"]).expires_at = _utcnow() - timedelta(minutes=1)
    db.commit()
    db.close()

    assert client.get(f"/api/v1/orders/{order['id']}").json()["data"]["status"] == "expired"
    # An expired order no longer blocks a new one
    assert client.post(ORDERS, json={}).status_code == 201


@pytest.mark.parametrize("code, amount, discount, final", [
    ("SAVE30", "30000", "9000.00", "21000.00"),
    ("FIXED5000", "50000", "5000.00", "45000.00"),
    ("WELCOME20", "30000.00", "6000.00", "24000.00"),
])
def test_validate_coupon(client, code, amount, discount, final):
    response = client.post("/api/v1/coupons/validate", json={"coupon_code": code, "amount": amount})

    data = response.json()["data"]
    assert data["valid"] is True
    assert data["pricing"]["discount_amount"] == discount
    assert data["pricing"]["final_amount"] == final


def test_validate_invalid_coupon(client):
    response = client.post("/api/v1/coupons/validate", json={"coupon_code": "NOPE", "amount": "30000"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["valid"] is False
    assert data["message"] == "Invalid coupon code. Please check and try again."
    assert data["pricing"]["final_amount"] == "30000.00"


def test_validate_expired_and_inapplicable_coupons(client):
    db = TestingSessionLocal()
    db.add(Coupon(code="OLD10", discount_type="percentage", value=10, display_discount="10%",
                  active=True, expires_at=_utcnow() - timedelta(days=1)))
    db.add(Coupon(code="TPAONLY", discount_type="fixed", value=1000, display_discount="Rp 1.000",
                  active=True, products="tpa"))
    db.commit()
    db.close()

    expired = client.post("/api/v1/coupons/validate", json={"coupon_code": "OLD10", "amount": "30000"})
    inapplicable = client.post(
        "/api/v1/coupons/validate",
        json={"coupon_code": "TPAONLY", "amount": "30000", "test_type": "vark"},
    )

    assert expired.json()["data"]["message"] == "This coupon has expired."
    assert inapplicable.json()["data"]["message"] == "This coupon cannot be used for this test."


def _notification(gateway_order_id, transaction_status="settlement", amount="30000.00"):
    return {
        "order_id": gateway_order_id,
        "status_code": "200",
        "gross_amount": amount,
        "transaction_status": transaction_status,
        "signature_key": notification_signature(gateway_order_id, "200", amount),
    }


def test_webhook_settlement_marks_paid(client, monkeypatch):
    monkeypatch.setenv("MIDTRANS_SERVER_KEY", "SB-Mid-server-test")
    order = client.post(ORDERS, json={}).json()["data"]
    token = client.post(f"/api/v1/orders/{order['id']}/payment_token").json()["data"]

    response = client.post("/webhook", json=_notification(token["midtrans_order_id"]))

    assert response.status_code == 200
    assert response.json() == {"ok": True}

    # Verify DB update
    db = TestingSessionLocal()
    updated = db.get(Order, order["id"])
    assert updated.status == "paid"
    assert updated.paid_at is not None
    assert db.query(PaymentToken).filter_by(order_id=order["id"]).first().status == "paid"
    db.close()


def test_webhook_does_not_reopen_paid_order(client, monkeypatch):
    monkeypatch.setenv("MIDTRANS_SERVER_KEY", "SB-Mid-server-test")
    order = client.post(ORDERS, json={}).json()["data"]
    token = client.post(f"/api/v1/orders/{order['id']}/payment_token").json()["data"]

    client.post("/webhook", json=_notification(token["midtrans_order_id"]))
    client.post("/webhook", json=_notification(token["midtrans_order_id"], "expire"))

    assert client.get(f"/api/v1/orders/{order['id']}").json()["data"]["status"] == "paid"


def test_webhook_invalid_signature(client, monkeypatch):
    monkeypatch.setenv("MIDTRANS_SERVER_KEY", "SB-Mid-server-test")
    payload = _notification("ORD-1-ABC")
    payload["signature_key"] = "forged"

    response = client.post("/webhook", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


def test_webhook_unknown_order(client):
    response = client.post("/webhook", json=_notification("ORD-UNKNOWN"))
    assert response.status_code == 200


def test_webhook_invalid_payload(client):
    response = client.post("/webhook", content="raw_payload")
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_missing_or_bad_token_is_rejected(client):
    fastapi_app.dependency_overrides.pop(paywall.backend.auth.verify_token)

    response = client.get(ORDERS, headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing token"


def test_missing_jwt_secret_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("JWT_SECRET", raising=False)

    with pytest.raises(RuntimeError, match="JWT_SECRET is not set"):
        paywall.backend.auth.verify_token("Bearer anything")


def test_missing_server_key_is_a_configuration_error(monkeypatch):
    monkeypatch.delenv("MIDTRANS_SERVER_KEY", raising=False)

    with pytest.raises(RuntimeError, match="MIDTRANS_SERVER_KEY is not set"):
        notification_signature("ORD-1-ABC", "200", "30000.00")
