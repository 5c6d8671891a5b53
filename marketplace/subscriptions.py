"""
Subscription and payment-method state.

Everything here runs after the payment outcome is known; nothing in this
module talks to the orchestrator.
"""
import logging

from marketplace import stripe_service
from marketplace.errors import NotFoundError, PaymentError, PermissionDeniedError
from marketplace.models import (
    BillingReceipt, PaymentMethod, Service, ServiceConsumer,
    SubscriptionStatus, SubscriptionTier, User, utcnow,
)
from marketplace.payments import ensure_stripe_customer, mark_receipts_paid
from marketplace.schemas import OperationResult

logger = logging.getLogger(__name__)


def _find_subscription(db, user_id, tier_id):
    return db.query(ServiceConsumer).filter_by(user_id=user_id, subscription_tier_id=tier_id).first()


def _owned_payment_method(db, user_id, payment_method_id):
    payment_method = db.get(PaymentMethod, payment_method_id) if payment_method_id else None
    if not payment_method or payment_method.user_id != user_id:
        return None
    return payment_method


def check_service_tier(db, service_id, tier_id):
    """Returns (tier, error message); the tier is None when the pair is invalid."""
    service = db.get(Service, service_id) if service_id else None
    if not service:
        return None, "Service not found."

    tier = next((t for t in service.subscription_tiers if t.id == tier_id), None)
    if not tier:
        return None, "Tier not found."
    return tier, None


def subscribe_to_tier(db, user_id, service_id, tier_id, payment_method_id,
                      auto_renewal=False, payment_intent_id=None):
    tier, error = check_service_tier(db, service_id, tier_id)
    if not tier:
        return OperationResult(success=False, message=error)

    if not tier.is_free:
        if not _owned_payment_method(db, user_id, payment_method_id):
            return OperationResult(success=False, message="Payment method not found.")
        if not payment_intent_id:
            return OperationResult(success=False, message="A settled payment is required for this tier.")

    existing = (
        db.query(ServiceConsumer)
        .join(SubscriptionTier)
        .filter(ServiceConsumer.user_id == user_id, SubscriptionTier.service_id == tier.service_id)
        .first()
    )

    if existing and existing.subscription_tier_id == tier.id \
            and existing.subscription_status == SubscriptionStatus.ACTIVE:
        if payment_intent_id and existing.payment_intent_id == payment_intent_id:
            # Same settled payment delivered twice
            return OperationResult(success=True, message="Successfully subscribed to service.")
        return OperationResult(success=False, message="Already subscribed to this tier.")

    now = utcnow()
    if existing:
        existing.subscription_status = SubscriptionStatus.ACTIVE
        existing.subscription_tier_id = tier.id
        existing.payment_method_id = payment_method_id if not tier.is_free else None
        existing.renewing_subscription = auto_renewal
        existing.subscription_start_date = now
        existing.last_renewed = now
        existing.payment_intent_id = payment_intent_id
    else:
        db.add(ServiceConsumer(
            user_id=user_id,
            subscription_tier_id=tier.id,
            subscription_status=SubscriptionStatus.ACTIVE,
            payment_method_id=payment_method_id if not tier.is_free else None,
            renewing_subscription=auto_renewal,
            subscription_start_date=now,
            last_renewed=now,
            payment_intent_id=payment_intent_id,
        ))
    db.commit()
    logger.info("user=%s subscribed to tier=%s intent=%s", user_id, tier.id, payment_intent_id)
    return OperationResult(success=True, message="Successfully subscribed to service.")


def activate_from_payment_intent(db, intent):
    """
    Reconciles a succeeded intent reported by the processor.

    Used when the synchronous activation after a payment never happened.
    """
    metadata = intent.get("metadata") or {}
    user_id = metadata.get("user_id")
    tier_id = metadata.get("subscription_tier_id")
    intent_id = intent.get("id")

    mark_receipts_paid(db, intent_id)

    if not user_id or not tier_id:
        logger.warning("payment intent %s has no subscription metadata", intent_id)
        return False

    tier = db.get(SubscriptionTier, tier_id)
    if not tier:
        logger.warning("payment intent %s references unknown tier=%s", intent_id, tier_id)
        return False

    payment_method_id = None
    stripe_payment_id = intent.get("payment_method")
    if stripe_payment_id:
        payment_method = db.query(PaymentMethod).filter_by(
            user_id=user_id, stripe_payment_id=stripe_payment_id).first()
        payment_method_id = payment_method.id if payment_method else None

    subscription = _find_subscription(db, user_id, tier_id)
    if subscription and subscription.subscription_status == SubscriptionStatus.ACTIVE:
        return True
    if subscription and subscription.payment_intent_id == intent_id:
        # Already applied; the user has since unsubscribed
        logger.info("payment intent %s already applied to subscription %s", intent_id, subscription.id)
        return True

    result = subscribe_to_tier(
        db, user_id, tier.service_id, tier_id,
        payment_method_id=payment_method_id or (subscription.payment_method_id if subscription else None),
        auto_renewal=subscription.renewing_subscription if subscription else False,
        payment_intent_id=intent_id,
    )
    if not result.success:
        logger.error("reconciling intent %s failed: %s", intent_id, result.message)
    return result.success


def unsubscribe_from_tier(db, user_id, tier_id):
    subscription = _find_subscription(db, user_id, tier_id)
    if not subscription:
        return OperationResult(success=False, message="Subscription not found.")

    # Paid tiers run until the end of the period already paid for
    if subscription.subscription_tier.is_free:
        subscription.subscription_status = SubscriptionStatus.CANCELLED
    else:
        subscription.subscription_status = SubscriptionStatus.PENDING_CANCELLATION
    db.commit()
    return OperationResult(success=True, message="Subscription cancelled.")


def resume_subscription(db, user_id, tier_id):
    subscription = _find_subscription(db, user_id, tier_id)
    if not subscription:
        return OperationResult(success=False, message="Subscription not found")
    if subscription.subscription_status != SubscriptionStatus.PENDING_CANCELLATION:
        return OperationResult(success=False, message="Subscription is not in a cancellable state")

    subscription.subscription_status = SubscriptionStatus.ACTIVE
    db.commit()
    return OperationResult(success=True, message="Subscription resumed successfully")


def delete_subscription(db, user_id, tier_id):
    subscription = _find_subscription(db, user_id, tier_id)
    if not subscription:
        return OperationResult(success=False, message="Subscription not found.")
    if subscription.subscription_status == SubscriptionStatus.ACTIVE:
        return OperationResult(success=False, message="Cannot delete an active subscription")

    db.delete(subscription)
    db.commit()
    return OperationResult(success=True, message="Subscription deleted")


def switch_subscription_tier(db, user_id, old_tier_id, new_tier_id):
    subscription = _find_subscription(db, user_id, old_tier_id)
    if not subscription:
        return OperationResult(success=False, message="Subscription not found.")

    new_tier = db.get(SubscriptionTier, new_tier_id)
    if not new_tier:
        return OperationResult(success=False, message="New tier not found.")
    if new_tier.service_id != subscription.subscription_tier.service_id:
        return OperationResult(success=False, message="New tier belongs to another service.")

    subscription.subscription_tier_id = new_tier.id
    db.commit()
    return OperationResult(success=True, message="Subscription tier switched successfully")


def update_subscription_payment_method(db, user_id, tier_id, payment_method_id, auto_renewal=None):
    subscription = _find_subscription(db, user_id, tier_id)
    if not subscription:
        raise NotFoundError("Subscription not found")

    if not _owned_payment_method(db, user_id, payment_method_id):
        raise NotFoundError("Payment method not found or does not belong to user")

    subscription.payment_method_id = payment_method_id
    if auto_renewal is not None:
        subscription.renewing_subscription = auto_renewal
    db.commit()
    return OperationResult(success=True)


def get_user_subscriptions(db, user_id):
    return db.query(ServiceConsumer).filter_by(user_id=user_id).all()


def is_user_subscribed_to_service(db, user_id, service_id):
    subscription = (
        db.query(ServiceConsumer)
        .join(SubscriptionTier)
        .filter(ServiceConsumer.user_id == user_id, SubscriptionTier.service_id == service_id)
        .first()
    )
    if subscription and subscription.subscription_status == SubscriptionStatus.ACTIVE:
        return {"is_subscribed": True, "subscription_tier_id": subscription.subscription_tier_id}
    return {"is_subscribed": False, "subscription_tier_id": None}


def get_billing_history(db, user_id):
    return (
        db.query(BillingReceipt)
        .filter_by(to_id=user_id)
        .order_by(BillingReceipt.date.desc())
        .all()
    )


# --- payment methods ---

def list_payment_methods(db, user_id):
    return db.query(PaymentMethod).filter_by(user_id=user_id).all()


def save_payment_method(db, user_id, stripe_payment_id, address=None):
    user = db.get(User, user_id)
    if not user or not user.stripe_customer_id:
        raise NotFoundError("User or Stripe customer ID not found")

    stripe_service.attach_payment_method(stripe_payment_id, user.stripe_customer_id)
    pm = stripe_service.retrieve_payment_method(stripe_payment_id)
    card = getattr(pm, "card", None)
    billing_details = getattr(pm, "billing_details", None)

    payment_method = PaymentMethod(
        user_id=user.id,
        stripe_customer_id=user.stripe_customer_id,
        stripe_payment_id=stripe_payment_id,
        card_brand=getattr(card, "brand", None),
        last4=getattr(card, "last4", None),
        exp_month=getattr(card, "exp_month", None),
        exp_year=getattr(card, "exp_year", None),
        cardholder_name=getattr(billing_details, "name", None),
        **(address or {}),
    )
    db.add(payment_method)
    db.commit()
    return payment_method


def delete_payment_method(db, user_id, payment_method_id):
    payment_method = db.get(PaymentMethod, payment_method_id)
    if not payment_method:
        raise NotFoundError("Payment method not found.")
    if payment_method.user_id != user_id:
        raise PermissionDeniedError("You do not have permission to delete this payment method.")

    stripe_service.detach_payment_method(payment_method.stripe_payment_id)
    db.delete(payment_method)
    db.commit()
    return OperationResult(success=True)


def initialize_setup_intent(db, user_id):
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    if not user.email:
        raise PaymentError("Email is required to create a Stripe customer. Fix this in your profile settings.")
    if not user.name:
        raise PaymentError("A name is required to create a Stripe customer. Fix this in your profile settings.")

    customer_id = ensure_stripe_customer(db, user)
    setup_intent = stripe_service.create_setup_intent(customer_id)
    if not setup_intent.client_secret:
        raise PaymentError("Failed to create SetupIntent")
    return setup_intent.client_secret
