"""
Midtrans Snap, server side.

Token issuing is simulated locally (no outbound call); the notification
signature check is the real Midtrans one:

    sha512(order_id + status_code + gross_amount + server_key)
"""
import hashlib
import hmac
import json
import os
import uuid
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

SNAP_HOSTS = {
    "production": "https://app.midtrans.com",
    "sandbox": "https://app.sandbox.midtrans.com",
}

# transaction_status -> order status; anything else leaves the order alone
NOTIFICATION_STATUSES = {
    "settlement": "paid",
    "capture": "paid",
    "expire": "expired",
    "deny": "failed",
    "cancel": "failed",
    "failure": "failed",
}


def gross_amount(amount: int) -> str:
    return f"{amount}.00"


def create_transaction(gateway_order_id: str, amount: int, customer_ref: str) -> dict:
    environment = os.getenv("MIDTRANS_ENVIRONMENT", "sandbox")
    token = str(uuid.uuid4())
    host = SNAP_HOSTS.get(environment, SNAP_HOSTS["sandbox"])
    return {
        "token": token,
        "redirect_url": f"{host}/snap/v4/redirection/{token}",
        "transaction_details": {
            "order_id": gateway_order_id,
            "gross_amount": gross_amount(amount),
        },
        "customer_details": {"customer_ref": customer_ref},
    }


def midtrans_response(transaction: dict) -> str:
    return json.dumps(transaction)


def notification_signature(gateway_order_id: str, status_code: str, amount: str) -> str:
    server_key = os.getenv("MIDTRANS_SERVER_KEY")
    if not server_key:
        raise RuntimeError("MIDTRANS_SERVER_KEY is not set. Check your .env file.")
    raw = f"{gateway_order_id}{status_code}{amount}{server_key}"
    return hashlib.sha512(raw.encode()).hexdigest()


def verify_notification(payload: dict) -> bool:
    expected = notification_signature(
        str(payload.get("order_id", "")),
        str(payload.get("status_code", "")),
        str(payload.get("gross_amount", "")),
    )
    return hmac.compare_digest(expected, str(payload.get("signature_key", "")))


def order_status_for(transaction_status: str, fraud_status: str | None = None) -> str | None:
    if transaction_status == "capture" and fraud_status not in (None, "accept"):
        return None
    return NOTIFICATION_STATUSES.get(transaction_status)
