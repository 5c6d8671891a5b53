import stripe

from marketplace.config import PAYMENT_CURRENCY, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET

stripe.api_key = STRIPE_SECRET_KEY


def create_customer(email, name):
    return stripe.Customer.create(email=email, name=name)


def create_payment(amount: int, customer_id: str, payment_method_id: str,
                   description: str, metadata: dict, idempotency_key: str = None):
    """Off-session PaymentIntent, confirmed in the same call."""
    params = dict(
        amount=amount,
        currency=PAYMENT_CURRENCY,
        customer=customer_id,
        payment_method=payment_method_id,
        off_session=True,
        confirm=True,
        description=description,
        metadata=metadata,
    )
    if idempotency_key:
        params["idempotency_key"] = idempotency_key
    return stripe.PaymentIntent.create(**params)


def retrieve_payment(payment_intent_id: str):
    return stripe.PaymentIntent.retrieve(payment_intent_id)


def confirm_payment(payment_intent_id: str):
    return stripe.PaymentIntent.confirm(payment_intent_id)


def cancel_payment(payment_intent_id: str):
    return stripe.PaymentIntent.cancel(payment_intent_id)


def attach_payment_method(payment_method_id: str, customer_id: str):
    return stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)


def retrieve_payment_method(payment_method_id: str):
    return stripe.PaymentMethod.retrieve(payment_method_id)


def detach_payment_method(payment_method_id: str):
    return stripe.PaymentMethod.detach(payment_method_id)


def create_setup_intent(customer_id: str):
    return stripe.SetupIntent.create(customer=customer_id)


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
