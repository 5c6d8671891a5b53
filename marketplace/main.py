import logging

import stripe
from fastapi import FastAPI, Request, Header, HTTPException
from fastapi.responses import JSONResponse

from marketplace import payments, stripe_service, subscriptions
from marketplace.config import LOG_LEVEL
from marketplace.database import Base, engine, SessionLocal
from marketplace.errors import MarketplaceError
from marketplace.routes import router

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="API Marketplace Billing")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = stripe_service.construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    intent = event["data"]["object"]
    db = SessionLocal()
    try:
        if event["type"] == "payment_intent.succeeded":
            subscriptions.activate_from_payment_intent(db, intent)
        elif event["type"] in ("payment_intent.canceled", "payment_intent.payment_failed"):
            payments.mark_receipts_failed(db, intent["id"])
        else:
            logger.debug("ignoring stripe event %s", event["type"])
    finally:
        db.close()

    return {"ok": True}
