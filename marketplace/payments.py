"""
Server-side payment intents for subscription tiers.

Creates the processor-side intent for a (user, tier, payment method), settles
its status into one of the four PaymentIntentStatus outcomes and records the
matching billing receipts.
"""
import logging
import time
from decimal import Decimal, ROUND_HALF_UP

import stripe

from marketplace import stripe_service
from marketplace.config import PAYMENT_STATUS_INTERVAL, PAYMENT_STATUS_TIMEOUT
from marketplace.errors import NotFoundError, PaymentError, PermissionDeniedError
from marketplace.models import (
    BillingReceipt, BillingStatus, PaymentMethod, ServiceConsumer,
    SubscriptionStatus, SubscriptionTier, User,
)
from marketplace.schemas import (
    ConfirmationResult, PaymentIntentData, PaymentIntentResult, PaymentIntentStatus,
)

logger = logging.getLogger(__name__)

SECRET_SEPARATOR = "_secret_"


def to_minor_units(price) -> int:
    return int((Decimal(str(price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def intent_id_from_client_secret(client_secret: str) -> str:
    # pi_123_secret_abc -> pi_123
    return (client_secret or "").split(SECRET_SEPARATOR, 1)[0]


def _result(status, message, intent=None):
    data = PaymentIntentData()
    if intent is not None:
        data = PaymentIntentData(
            client_secret=getattr(intent, "client_secret", None),
            payment_intent_id=getattr(intent, "id", None),
        )
    return PaymentIntentResult(
        success=status == PaymentIntentStatus.SUCCEEDED,
        status=status,
        message=message,
        data=data,
    )


def wait_for_payment_status(intent, timeout=PAYMENT_STATUS_TIMEOUT,
                            interval=PAYMENT_STATUS_INTERVAL, sleep=time.sleep):
    """
    Polls the intent until its status maps to a PaymentIntentStatus.

    requires_confirmation is confirmed server-side; requires_capture is not
    used by this service and gets cancelled. "processing" keeps polling until
    the timeout, which is reported as RETRY_PAYMENT.
    """
    start = time.monotonic()

    while time.monotonic() - start < timeout:
        current = stripe_service.retrieve_payment(intent.id)

        if not current:
            stripe_service.cancel_payment(intent.id)
            return _result(PaymentIntentStatus.RETRY_PAYMENT, "Payment failed. Please try again.")

        status = current.status
        if status == "succeeded":
            return _result(PaymentIntentStatus.SUCCEEDED, "Payment successful", current)

        if status == "requires_action":
            return _result(
                PaymentIntentStatus.CONFIRMATION_REQUIRED,
                "Payment requires authentication. Please complete payment in-session.",
                current,
            )

        if status == "requires_payment_method":
            return _result(
                PaymentIntentStatus.RETRY_PAYMENT,
                "Payment failed. Please try another payment method.",
                current,
            )

        if status == "requires_confirmation":
            try:
                confirmed = stripe_service.confirm_payment(intent.id)
            except stripe.StripeError:
                logger.exception("payments.wait_for_payment_status confirm failed id=%s", intent.id)
                return _result(PaymentIntentStatus.RETRY_PAYMENT, "Error confirming payment. Please try again.")
            if confirmed.status == "succeeded":
                return _result(PaymentIntentStatus.SUCCEEDED, "Payment successful after confirmation", confirmed)
            stripe_service.cancel_payment(intent.id)
            return _result(
                PaymentIntentStatus.RETRY_PAYMENT,
                "Payment confirmation failed with status: %s" % confirmed.status,
                confirmed,
            )

        if status == "requires_capture":
            stripe_service.cancel_payment(intent.id)
            return _result(PaymentIntentStatus.RETRY_PAYMENT, "Payment failed. Please try again.", current)

        if status == "canceled":
            return _result(PaymentIntentStatus.RETRY_PAYMENT, "Payment was canceled. Please try again.", current)

        sleep(interval)

    return _result(PaymentIntentStatus.RETRY_PAYMENT, "Payment status check timed out.")


def ensure_stripe_customer(db, user):
    if not user.stripe_customer_id:
        customer = stripe_service.create_customer(email=user.email, name=user.name)
        user.stripe_customer_id = customer.id
        db.commit()
    return user.stripe_customer_id


_RECEIPT_STATUS = {
    PaymentIntentStatus.SUCCEEDED: BillingStatus.PAID,
    PaymentIntentStatus.CONFIRMATION_REQUIRED: BillingStatus.PENDING,
}


def create_tier_payment_intent(db, user_id, payment_method_id, tier_id, idempotency_key=None):
    tier = db.get(SubscriptionTier, tier_id)
    if not tier:
        raise NotFoundError("Service or Tier not found")

    payment_method = db.get(PaymentMethod, payment_method_id)
    if not payment_method or payment_method.user_id != user_id:
        raise PermissionDeniedError("Payment method not found or doesn't belong to user")

    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    active = db.query(ServiceConsumer).filter_by(
        user_id=user_id,
        subscription_tier_id=tier_id,
        subscription_status=SubscriptionStatus.ACTIVE,
    ).first()
    if active:
        raise PaymentError("Already subscribed to this tier")

    if tier.is_free:
        return _result(PaymentIntentStatus.SUCCEEDED, "No payment required for a free tier.")

    return charge_tier(db, user, tier, payment_method, idempotency_key=idempotency_key)


def charge_renewal(db, subscription, idempotency_key=None):
    """Charges one more period of an existing subscription, off-session."""
    return charge_tier(
        db,
        subscription.user,
        subscription.subscription_tier,
        subscription.payment_method,
        idempotency_key=idempotency_key,
    )


def charge_tier(db, user, tier, payment_method, idempotency_key=None):
    customer_id = ensure_stripe_customer(db, user)

    try:
        intent = stripe_service.create_payment(
            amount=to_minor_units(tier.price),
            customer_id=customer_id,
            payment_method_id=payment_method.stripe_payment_id,
            description="Subscription to %s, for %s" % (tier.service.name, tier.name),
            metadata={"user_id": user.id, "subscription_tier_id": tier.id},
            idempotency_key=idempotency_key,
        )
    except stripe.CardError as e:
        logger.warning("payments.charge_tier card declined user=%s tier=%s", user.id, tier.id)
        result = _result(PaymentIntentStatus.FAILED, e.user_message or "Your card was declined.")
    else:
        result = wait_for_payment_status(intent)

    _record_receipts(db, tier, user.id, payment_method.id, result)
    logger.info(
        "payment intent for user=%s tier=%s settled as %s",
        user.id, tier.id, result.status.value,
    )
    return result


def _record_receipts(db, tier, user_id, payment_method_id, result):
    owner_id = tier.service.owners[0].user_id if tier.service.owners else ""
    description = "Subscription to %s" % tier.name
    intent_id = result.data.payment_intent_id

    db.add(BillingReceipt(
        amount=tier.price,
        description=description,
        from_id=owner_id,
        to_id=user_id,
        status=_RECEIPT_STATUS.get(result.status, BillingStatus.FAILED),
        payment_method_id=payment_method_id,
        subscription_tier_id=tier.id,
        payment_intent_id=intent_id,
    ))
    if result.success:
        db.add(BillingReceipt(
            amount=tier.price,
            description=description,
            from_id=user_id,
            to_id=owner_id,
            status=BillingStatus.RECEIVED,
            payment_method_id=payment_method_id,
            subscription_tier_id=tier.id,
            payment_intent_id=intent_id,
        ))
    db.commit()


def confirm_payment_intent(db, client_secret):
    confirmed = stripe_service.confirm_payment(intent_id_from_client_secret(client_secret))
    if confirmed.status == "succeeded":
        mark_receipts_paid(db, confirmed.id)
    return ConfirmationResult(status=confirmed.status, id=confirmed.id)


def cancel_payment_intent(db, payment_intent_id, user_id=None):
    """
    Cancels an intent at the processor and fails its PENDING receipts.

    With a user_id the intent must be one that user paid for.
    """
    if not payment_intent_id:
        logger.warning("payments.cancel_payment_intent called without an intent id, skipping")
        return False

    if user_id is not None:
        owned = db.query(BillingReceipt).filter(
            BillingReceipt.payment_intent_id == payment_intent_id,
            BillingReceipt.to_id == user_id,
            BillingReceipt.status != BillingStatus.RECEIVED,
        ).first()
        if not owned:
            logger.warning("user=%s tried to cancel intent %s they did not pay", user_id, payment_intent_id)
            raise NotFoundError("Payment intent not found")

    stripe_service.cancel_payment(payment_intent_id)
    mark_receipts_failed(db, payment_intent_id, user_id=user_id)
    return True


def mark_receipts_paid(db, payment_intent_id):
    pending = db.query(BillingReceipt).filter_by(
        payment_intent_id=payment_intent_id, status=BillingStatus.PENDING,
    ).all()
    for receipt in pending:
        receipt.status = BillingStatus.PAID
    db.commit()
    return len(pending)


def mark_receipts_failed(db, payment_intent_id, user_id=None):
    query = db.query(BillingReceipt).filter_by(
        payment_intent_id=payment_intent_id, status=BillingStatus.PENDING,
    )
    if user_id is not None:
        query = query.filter_by(to_id=user_id)
    pending = query.all()
    for receipt in pending:
        receipt.status = BillingStatus.FAILED
    db.commit()
    return len(pending)
