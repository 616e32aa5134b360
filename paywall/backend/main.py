from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from dotenv import load_dotenv
import structlog
from fastapi import FastAPI, Request, HTTPException, Depends
from sqlalchemy.orm import Session

from paywall.backend.routes import router, seed_coupons
from paywall.backend.database import Base, engine, get_db, SessionLocal
from paywall.backend.gateway_service import order_status_for, verify_notification
from paywall.backend.models import PaymentToken
from paywall.logging_config import setup_logging

# Force-load .env
BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

API_PREFIX = "/api/v1"

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_coupons(db)
    finally:
        db.close()
    yield


app = FastAPI(title="Assessment Payment Service", lifespan=lifespan)

app.include_router(router, prefix=API_PREFIX)


@app.post("/webhook")
async def midtrans_notification(request: Request, db: Session = Depends(get_db)):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not verify_notification(payload):
        raise HTTPException(status_code=400, detail="Invalid signature")

    token = db.query(PaymentToken).filter_by(gateway_order_id=payload.get("order_id")).first()
    if token is None:
        logger.warning("notification_unknown_order", gateway_order_id=payload.get("order_id"))
        return {"ok": True}

    status = order_status_for(payload.get("transaction_status", ""), payload.get("fraud_status"))
    order = token.order
    # Only a pending order moves; paid/expired/failed are final
    if status is not None and order.status == "pending":
        order.status = status
        token.status = status
        if status == "paid":
            order.paid_at = datetime.now(timezone.utc).replace(tzinfo=None)
        db.commit()
        logger.info("order_status_notified", order_id=order.id, status=status)

    return {"ok": True}
