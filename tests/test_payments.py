from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from marketplace import payments
from marketplace.errors import NotFoundError, PaymentError, PermissionDeniedError
from marketplace.models import BillingReceipt, BillingStatus, ServiceConsumer, SubscriptionStatus, User
from marketplace.schemas import PaymentIntentStatus

from conftest import USER_ID


def _intent(status, intent_id="pi_1", client_secret="pi_1_secret_abc"):
    return SimpleNamespace(id=intent_id, status=status, client_secret=client_secret)


@pytest.fixture
def no_sleep():
    return lambda seconds: None


@pytest.mark.parametrize("stripe_status,expected", [
    ("succeeded", PaymentIntentStatus.SUCCEEDED),
    ("requires_action", PaymentIntentStatus.CONFIRMATION_REQUIRED),
    ("requires_payment_method", PaymentIntentStatus.RETRY_PAYMENT),
    ("canceled", PaymentIntentStatus.RETRY_PAYMENT),
])
def test_wait_for_payment_status_maps_terminal_states(mocker, no_sleep, stripe_status, expected):
    mocker.patch("marketplace.payments.stripe_service.retrieve_payment", return_value=_intent(stripe_status))

    result = payments.wait_for_payment_status(_intent("processing"), sleep=no_sleep)

    assert result.status == expected
    assert result.success == (expected == PaymentIntentStatus.SUCCEEDED)
    assert result.data.payment_intent_id == "pi_1"
    assert result.data.client_secret == "pi_1_secret_abc"


def test_requires_confirmation_is_confirmed_server_side(mocker, no_sleep):
    mocker.patch("marketplace.payments.stripe_service.retrieve_payment",
                 return_value=_intent("requires_confirmation"))
    confirm = mocker.patch("marketplace.payments.stripe_service.confirm_payment",
                           return_value=_intent("succeeded"))

    result = payments.wait_for_payment_status(_intent("requires_confirmation"), sleep=no_sleep)

    confirm.assert_called_once_with("pi_1")
    assert result.status == PaymentIntentStatus.SUCCEEDED


def test_failed_server_side_confirmation_cancels(mocker, no_sleep):
    mocker.patch("marketplace.payments.stripe_service.retrieve_payment",
                 return_value=_intent("requires_confirmation"))
    mocker.patch("marketplace.payments.stripe_service.confirm_payment",
                 return_value=_intent("requires_payment_method"))
    cancel = mocker.patch("marketplace.payments.stripe_service.cancel_payment")

    result = payments.wait_for_payment_status(_intent("requires_confirmation"), sleep=no_sleep)

    cancel.assert_called_once_with("pi_1")
    assert result.status == PaymentIntentStatus.RETRY_PAYMENT
    assert "requires_payment_method" in result.message


def test_requires_capture_is_cancelled(mocker, no_sleep):
    mocker.patch("marketplace.payments.stripe_service.retrieve_payment",
                 return_value=_intent("requires_capture"))
    cancel = mocker.patch("marketplace.payments.stripe_service.cancel_payment")

    result = payments.wait_for_payment_status(_intent("requires_capture"), sleep=no_sleep)

    cancel.assert_called_once_with("pi_1")
    assert result.status == PaymentIntentStatus.RETRY_PAYMENT


def test_processing_polls_until_settled(mocker, no_sleep):
    retrieve = mocker.patch("marketplace.payments.stripe_service.retrieve_payment",
                            side_effect=[_intent("processing"), _intent("processing"), _intent("succeeded")])

    result = payments.wait_for_payment_status(_intent("processing"), timeout=10, sleep=no_sleep)

    assert retrieve.call_count == 3
    assert result.success is True


def test_processing_times_out(mocker):
    mocker.patch("marketplace.payments.stripe_service.retrieve_payment", return_value=_intent("processing"))

    result = payments.wait_for_payment_status(_intent("processing"), timeout=0.05, interval=0.01)

    assert result.status == PaymentIntentStatus.RETRY_PAYMENT
    assert result.message == "Payment status check timed out."


def test_to_minor_units_rounds_half_up():
    assert payments.to_minor_units(Decimal("19.99")) == 1999
    assert payments.to_minor_units(Decimal("0.005")) == 1
    assert payments.to_minor_units(10) == 1000


def test_intent_id_from_client_secret():
    assert payments.intent_id_from_client_secret("pi_123_secret_abc") == "pi_123"
    assert payments.intent_id_from_client_secret("") == ""


def test_create_tier_payment_intent_success_writes_receipts(seed, mocker):
    mock_pi = _intent("succeeded", intent_id="pi_ok", client_secret="pi_ok_secret_1")
    create = mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=mock_pi)

    result = payments.create_tier_payment_intent(seed, USER_ID, "pm-1", "tier-pro", idempotency_key="k1")

    assert result.success is True
    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 1999
    assert kwargs["customer"] == "cus_1"
    assert kwargs["payment_method"] == "pm_card_visa"
    assert kwargs["idempotency_key"] == "k1"
    assert kwargs["metadata"] == {"user_id": USER_ID, "subscription_tier_id": "tier-pro"}

    receipts = seed.query(BillingReceipt).order_by(BillingReceipt.status).all()
    assert {(r.to_id, r.status) for r in receipts} == {
        (USER_ID, BillingStatus.PAID),
        ("owner-1", BillingStatus.RECEIVED),
    }
    assert all(r.payment_intent_id == "pi_ok" for r in receipts)


def test_create_tier_payment_intent_confirmation_required_leaves_pending_receipt(seed, mocker):
    mock_pi = _intent("requires_action", intent_id="pi_3ds", client_secret="pi_3ds_secret_1")
    mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=mock_pi)

    result = payments.create_tier_payment_intent(seed, USER_ID, "pm-1", "tier-pro")

    assert result.status == PaymentIntentStatus.CONFIRMATION_REQUIRED
    assert result.data.client_secret == "pi_3ds_secret_1"
    receipts = seed.query(BillingReceipt).all()
    assert [r.status for r in receipts] == [BillingStatus.PENDING]


def test_card_error_is_a_failed_result(seed, mocker):
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=stripe.CardError("Your card was declined.", None, "card_declined"))

    result = payments.create_tier_payment_intent(seed, USER_ID, "pm-1", "tier-pro")

    assert result.success is False
    assert result.status == PaymentIntentStatus.FAILED
    assert [r.status for r in seed.query(BillingReceipt).all()] == [BillingStatus.FAILED]


def test_creates_stripe_customer_when_missing(seed, mocker):
    user = seed.get(User, USER_ID)
    user.stripe_customer_id = None
    seed.commit()
    mocker.patch("stripe.Customer.create", return_value=SimpleNamespace(id="cus_new"))
    mock_pi = _intent("succeeded")
    create = mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=mock_pi)

    payments.create_tier_payment_intent(seed, USER_ID, "pm-1", "tier-pro")

    assert create.call_args.kwargs["customer"] == "cus_new"
    seed.expire_all()
    assert seed.get(User, USER_ID).stripe_customer_id == "cus_new"


def test_free_tier_needs_no_processor_call(seed, mocker):
    create = mocker.patch("stripe.PaymentIntent.create")

    result = payments.create_tier_payment_intent(seed, USER_ID, "pm-1", "tier-free")

    assert result.success is True
    create.assert_not_called()


def test_unknown_tier(seed):
    with pytest.raises(NotFoundError):
        payments.create_tier_payment_intent(seed, USER_ID, "pm-1", "tier-missing")


def test_foreign_payment_method(seed):
    with pytest.raises(PermissionDeniedError):
        payments.create_tier_payment_intent(seed, "owner-1", "pm-1", "tier-pro")


def test_already_active_subscription_is_refused(seed):
    seed.add(ServiceConsumer(user_id=USER_ID, subscription_tier_id="tier-pro",
                             subscription_status=SubscriptionStatus.ACTIVE))
    seed.commit()

    with pytest.raises(PaymentError):
        payments.create_tier_payment_intent(seed, USER_ID, "pm-1", "tier-pro")


def test_cancel_payment_intent_marks_pending_receipts_failed(seed, mocker):
    seed.add(BillingReceipt(amount=Decimal("19.99"), to_id=USER_ID, status=BillingStatus.PENDING,
                            payment_intent_id="pi_3ds"))
    seed.commit()
    cancel = mocker.patch("stripe.PaymentIntent.cancel")

    assert payments.cancel_payment_intent(seed, "pi_3ds") is True

    cancel.assert_called_once_with("pi_3ds")
    seed.expire_all()
    assert seed.query(BillingReceipt).one().status == BillingStatus.FAILED


def test_cancel_for_user_requires_their_receipt(seed, mocker):
    seed.add(BillingReceipt(amount=Decimal("19.99"), to_id="owner-1", status=BillingStatus.RECEIVED,
                            payment_intent_id="pi_sold"))
    seed.commit()
    cancel = mocker.patch("stripe.PaymentIntent.cancel")

    # The seller of a tier cannot cancel the buyer's payment
    with pytest.raises(NotFoundError):
        payments.cancel_payment_intent(seed, "pi_sold", user_id="owner-1")
    with pytest.raises(NotFoundError):
        payments.cancel_payment_intent(seed, "pi_sold", user_id=USER_ID)
    cancel.assert_not_called()


def test_cancel_without_id_skips_processor(seed, mocker):
    cancel = mocker.patch("stripe.PaymentIntent.cancel")

    assert payments.cancel_payment_intent(seed, "") is False
    cancel.assert_not_called()


def test_confirm_payment_intent_uses_id_from_secret(seed, mocker):
    seed.add(BillingReceipt(amount=Decimal("19.99"), to_id=USER_ID, status=BillingStatus.PENDING,
                            payment_intent_id="pi_7"))
    seed.commit()
    confirm = mocker.patch("stripe.PaymentIntent.confirm",
                           return_value=_intent("succeeded", intent_id="pi_7"))

    confirmation = payments.confirm_payment_intent(seed, "pi_7_secret_zzz")

    confirm.assert_called_once_with("pi_7")
    assert confirmation.succeeded
    assert confirmation.id == "pi_7"
    seed.expire_all()
    assert seed.query(BillingReceipt).one().status == BillingStatus.PAID
