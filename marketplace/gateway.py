import logging
from typing import Optional, Protocol

from marketplace import payments
from marketplace.database import SessionLocal, session_scope
from marketplace.errors import MarketplaceError
from marketplace.schemas import ConfirmationResult, PaymentIntentResult, PaymentIntentStatus

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_intent(self, payment_method_id: str, tier_id: str, *,
                      user_id: Optional[str] = None,
                      idempotency_key: Optional[str] = None) -> PaymentIntentResult: ...

    def confirm(self, client_secret: str) -> ConfirmationResult: ...

    def cancel(self, payment_intent_id: str) -> None: ...


class StripeGateway:
    """
    PaymentGateway backed by Stripe and the local database.

    Built once per process. Each call opens its own session, so one instance
    can be shared by every request.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def create_intent(self, payment_method_id, tier_id, *, user_id=None, idempotency_key=None):
        with session_scope(self.session_factory) as db:
            try:
                return payments.create_tier_payment_intent(
                    db, user_id, payment_method_id, tier_id, idempotency_key=idempotency_key,
                )
            except MarketplaceError as e:
                # Validation failures are business rejections, not transport errors
                logger.info("payment intent refused user=%s tier=%s: %s", user_id, tier_id, e.message)
                return PaymentIntentResult(success=False, status=PaymentIntentStatus.FAILED, message=e.message)

    def confirm(self, client_secret):
        with session_scope(self.session_factory) as db:
            return payments.confirm_payment_intent(db, client_secret)

    def cancel(self, payment_intent_id):
        with session_scope(self.session_factory) as db:
            payments.cancel_payment_intent(db, payment_intent_id)
