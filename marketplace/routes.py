from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from marketplace import payments, subscriptions
from marketplace.auth import verify_token
from marketplace.database import SessionLocal
from marketplace.gateway import StripeGateway
from marketplace.notifications import CollectingNotifier
from marketplace.orchestrator import PaymentOrchestrator

router = APIRouter()

gateway = StripeGateway()


def get_gateway():
    return gateway


class PurchaseRequest(BaseModel):
    service_id: str
    tier_id: str
    payment_method_id: str
    auto_renewal: bool = False


class PaymentIntentRequest(BaseModel):
    payment_method_id: str
    tier_id: str


class CancelIntentRequest(BaseModel):
    payment_intent_id: str = ""


class SwitchTierRequest(BaseModel):
    old_tier_id: str
    new_tier_id: str


class UpdatePaymentMethodRequest(BaseModel):
    payment_method_id: str
    auto_renewal: Optional[bool] = None


class SavePaymentMethodRequest(BaseModel):
    payment_method_id: str              # pm_... from the processor
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


def _subscription_out(consumer):
    tier = consumer.subscription_tier
    return {
        "id": consumer.id,
        "subscription_tier_id": consumer.subscription_tier_id,
        "tier_name": tier.name,
        "service_id": tier.service_id,
        "service_name": tier.service.name,
        "price": float(tier.price),
        "features": tier.features or [],
        "status": consumer.subscription_status.value,
        "payment_method_id": consumer.payment_method_id,
        "renewing_subscription": consumer.renewing_subscription,
        "last_renewed": consumer.last_renewed.isoformat() if consumer.last_renewed else None,
    }


def _payment_method_out(pm):
    return {
        "id": pm.id,
        "card_brand": pm.card_brand,
        "last4": pm.last4,
        "exp_month": pm.exp_month,
        "exp_year": pm.exp_year,
        "cardholder_name": pm.cardholder_name,
    }


def _receipt_out(receipt):
    return {
        "id": receipt.id,
        "amount": float(receipt.amount),
        "description": receipt.description,
        "from_id": receipt.from_id,
        "to_id": receipt.to_id,
        "status": receipt.status.value,
        "date": receipt.date.isoformat() if receipt.date else None,
    }


@router.post("/subscriptions/purchase")
def purchase_subscription(
    request: PurchaseRequest,
    user_id: str = Depends(verify_token),
    payment_gateway=Depends(get_gateway),
):
    notifier = CollectingNotifier()

    db = SessionLocal()
    try:
        tier, error = subscriptions.check_service_tier(db, request.service_id, request.tier_id)
    finally:
        db.close()
    if not tier:
        notifier.error(error)
        return {"success": False, "notifications": notifier.messages}

    orchestrator = PaymentOrchestrator(payment_gateway, notifier, user_id=user_id)
    attempt = orchestrator.run(request.tier_id, request.payment_method_id)
    if not attempt.success:
        return {"success": False, "notifications": notifier.messages}

    db = SessionLocal()
    try:
        result = subscriptions.subscribe_to_tier(
            db, user_id, request.service_id, request.tier_id, request.payment_method_id,
            auto_renewal=request.auto_renewal,
            payment_intent_id=attempt.payment_intent_id,
        )
    finally:
        db.close()

    if result.success:
        notifier.success(result.message)
    else:
        # Charge went through; the webhook reconciles the subscription
        notifier.error(result.message)
    return {
        "success": result.success,
        "payment_intent_id": attempt.payment_intent_id,
        "notifications": notifier.messages,
    }


@router.post("/payments/intents")
def create_payment_intent(request: PaymentIntentRequest, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        result = payments.create_tier_payment_intent(db, user_id, request.payment_method_id, request.tier_id)
    finally:
        db.close()
    return result


@router.post("/payments/intents/cancel")
def cancel_payment_intent(request: CancelIntentRequest, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        cancelled = payments.cancel_payment_intent(db, request.payment_intent_id, user_id=user_id)
    finally:
        db.close()
    return {"success": cancelled}


@router.get("/subscriptions")
def list_subscriptions(user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        items = [_subscription_out(c) for c in subscriptions.get_user_subscriptions(db, user_id)]
    finally:
        db.close()
    return {"success": True, "subscriptions": items}


@router.get("/subscriptions/status/{service_id}")
def subscription_status(service_id: str, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return subscriptions.is_user_subscribed_to_service(db, user_id, service_id)
    finally:
        db.close()


@router.post("/subscriptions/switch")
def switch_tier(request: SwitchTierRequest, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return subscriptions.switch_subscription_tier(db, user_id, request.old_tier_id, request.new_tier_id)
    finally:
        db.close()


@router.post("/subscriptions/{tier_id}/unsubscribe")
def unsubscribe(tier_id: str, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return subscriptions.unsubscribe_from_tier(db, user_id, tier_id)
    finally:
        db.close()


@router.post("/subscriptions/{tier_id}/resume")
def resume(tier_id: str, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return subscriptions.resume_subscription(db, user_id, tier_id)
    finally:
        db.close()


@router.delete("/subscriptions/{tier_id}")
def delete_subscription(tier_id: str, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return subscriptions.delete_subscription(db, user_id, tier_id)
    finally:
        db.close()


@router.patch("/subscriptions/{tier_id}/payment-method")
def update_payment_method(tier_id: str, request: UpdatePaymentMethodRequest,
                          user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return subscriptions.update_subscription_payment_method(
            db, user_id, tier_id, request.payment_method_id, auto_renewal=request.auto_renewal,
        )
    finally:
        db.close()


@router.get("/billing/history")
def billing_history(user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return [_receipt_out(r) for r in subscriptions.get_billing_history(db, user_id)]
    finally:
        db.close()


@router.get("/payment-methods")
def list_payment_methods(user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return [_payment_method_out(pm) for pm in subscriptions.list_payment_methods(db, user_id)]
    finally:
        db.close()


@router.post("/payment-methods/setup-intent")
def setup_intent(user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return {"client_secret": subscriptions.initialize_setup_intent(db, user_id)}
    finally:
        db.close()


@router.post("/payment-methods")
def save_payment_method(request: SavePaymentMethodRequest, user_id: str = Depends(verify_token)):
    address = request.model_dump(exclude={"payment_method_id"})
    db = SessionLocal()
    try:
        pm = subscriptions.save_payment_method(db, user_id, request.payment_method_id, address=address)
        return _payment_method_out(pm)
    finally:
        db.close()


@router.delete("/payment-methods/{payment_method_id}")
def delete_payment_method(payment_method_id: str, user_id: str = Depends(verify_token)):
    db = SessionLocal()
    try:
        return subscriptions.delete_payment_method(db, user_id, payment_method_id)
    finally:
        db.close()
