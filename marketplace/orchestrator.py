"""
Drives one subscription payment attempt to a terminal outcome.

    START --create--> SUCCEEDED ------------------------------------> True
    START --create--> CONFIRMATION_REQUIRED --confirm--> succeeded --> True
                                            --other/absent--cancel--> False
    START --create--> RETRY_PAYMENT / FAILED -----------------------> False
    START --error--------------------------------------------------> False

The boolean is the only machine-readable signal. Everything else reaches the
user through the notifier, and the subscription itself is written by the
caller.
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from marketplace.notifications import LoggingNotifier
from marketplace.schemas import PaymentIntentStatus

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Error processing payment."
PAYMENT_SUCCEEDED = "Payment processed successfully."
CONFIRMATION_SUCCEEDED = "Payment confirmed successfully."
MISSING_INPUT = "Select a subscription tier and a payment method."
ALREADY_IN_PROGRESS = "A payment for this tier is already in progress."


@dataclass
class PaymentAttempt:
    success: bool
    payment_intent_id: Optional[str] = None


class InFlightRegistry:
    """Process-wide set of (user, tier) pairs with a payment attempt running."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys = set()

    @contextmanager
    def claim(self, key):
        with self._lock:
            if key in self._keys:
                acquired = False
            else:
                self._keys.add(key)
                acquired = True
        try:
            yield acquired
        finally:
            if acquired:
                with self._lock:
                    self._keys.discard(key)

    def __contains__(self, key):
        with self._lock:
            return key in self._keys


in_flight = InFlightRegistry()


class PaymentOrchestrator:
    def __init__(self, gateway, notifier=None, user_id=None, registry=None):
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.user_id = user_id
        self.registry = registry if registry is not None else in_flight

    def attempt_payment(self, tier_id, payment_method_id) -> bool:
        return self.run(tier_id, payment_method_id).success

    def run(self, tier_id, payment_method_id) -> PaymentAttempt:
        if not tier_id or not payment_method_id or self.gateway is None:
            self.notifier.error(MISSING_INPUT)
            return PaymentAttempt(False)

        with self.registry.claim((self.user_id, tier_id)) as acquired:
            if not acquired:
                logger.warning("payment already in flight user=%s tier=%s", self.user_id, tier_id)
                self.notifier.error(ALREADY_IN_PROGRESS)
                return PaymentAttempt(False)
            return self._attempt(tier_id, payment_method_id)

    def idempotency_key(self, tier_id):
        return "%s:%s:%s" % (self.user_id or "anonymous", tier_id, uuid.uuid4().hex)

    def _attempt(self, tier_id, payment_method_id):
        try:
            result = self.gateway.create_intent(
                payment_method_id, tier_id,
                user_id=self.user_id,
                idempotency_key=self.idempotency_key(tier_id),
            )
        except Exception:
            logger.exception("Error processing payment tier=%s payment_method=%s", tier_id, payment_method_id)
            self.notifier.error(GENERIC_ERROR)
            return PaymentAttempt(False)

        if result.success:
            self.notifier.success(PAYMENT_SUCCEEDED)
            return PaymentAttempt(True, result.data.payment_intent_id)

        self.notifier.error(result.message or GENERIC_ERROR)

        if result.status == PaymentIntentStatus.CONFIRMATION_REQUIRED:
            return self._confirm_or_cancel(result)

        # RETRY_PAYMENT is safe to re-attempt from scratch; FAILED is terminal.
        # Neither is retried here.
        return PaymentAttempt(False)

    def _confirm_or_cancel(self, result):
        client_secret = result.data.client_secret
        confirmation = None
        if client_secret:
            try:
                confirmation = self.gateway.confirm(client_secret)
            except Exception:
                logger.exception("payment confirmation raised")

            if confirmation is not None and confirmation.succeeded:
                self.notifier.success(CONFIRMATION_SUCCEEDED)
                return PaymentAttempt(True, confirmation.id or result.data.payment_intent_id)

        # The confirmed intent id, never the client secret
        intent_id = (confirmation.id if confirmation else None) or result.data.payment_intent_id or ""
        try:
            self.gateway.cancel(intent_id)
        except Exception:
            logger.exception("cancelling payment intent %r failed", intent_id)
        return PaymentAttempt(False)
