import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, JSON, Numeric, String,
)
from sqlalchemy.orm import relationship

from marketplace.database import Base


def _uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PENDING_CANCELLATION = "PENDING_CANCELLATION"
    CANCELLED = "CANCELLED"


class BillingStatus(str, enum.Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    FAILED = "FAILED"
    RECEIVED = "RECEIVED"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String)
    email = Column(String, unique=True, index=True)
    stripe_customer_id = Column(String)                 # cus_...

    payment_methods = relationship("PaymentMethod", back_populates="user")
    subscriptions = relationship("ServiceConsumer", back_populates="user")


class Service(Base):
    __tablename__ = "services"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)

    owners = relationship("ServiceOwner", back_populates="service")
    subscription_tiers = relationship("SubscriptionTier", back_populates="service")


class ServiceOwner(Base):
    __tablename__ = "service_owners"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(String, ForeignKey("services.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    service = relationship("Service", back_populates="owners")


class SubscriptionTier(Base):
    __tablename__ = "subscription_tiers"

    id = Column(String, primary_key=True, default=_uuid)
    service_id = Column(String, ForeignKey("services.id"), nullable=False)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    features = Column(JSON, default=list)

    service = relationship("Service", back_populates="subscription_tiers")

    @property
    def is_free(self):
        return not self.price


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    stripe_customer_id = Column(String)
    stripe_payment_id = Column(String, nullable=False)  # pm_...
    card_brand = Column(String)
    last4 = Column(String)
    exp_month = Column(Integer)
    exp_year = Column(Integer)
    cardholder_name = Column(String)
    address_line1 = Column(String)
    address_line2 = Column(String)
    city = Column(String)
    state = Column(String)
    postal_code = Column(String)
    country = Column(String)

    user = relationship("User", back_populates="payment_methods")


class ServiceConsumer(Base):
    __tablename__ = "service_consumers"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    subscription_tier_id = Column(String, ForeignKey("subscription_tiers.id"), nullable=False)
    payment_method_id = Column(String, ForeignKey("payment_methods.id"))
    subscription_status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE)
    renewing_subscription = Column(Boolean, default=False)
    subscription_start_date = Column(DateTime, default=utcnow)
    last_renewed = Column(DateTime, default=utcnow)
    payment_intent_id = Column(String, index=True)      # intent that last activated it

    user = relationship("User", back_populates="subscriptions")
    subscription_tier = relationship("SubscriptionTier")
    payment_method = relationship("PaymentMethod")


class BillingReceipt(Base):
    __tablename__ = "billing_receipts"

    id = Column(String, primary_key=True, default=_uuid)
    amount = Column(Numeric(10, 2), nullable=False)
    description = Column(String)
    from_id = Column(String)
    to_id = Column(String, index=True)
    status = Column(Enum(BillingStatus), nullable=False)
    payment_method_id = Column(String)
    subscription_tier_id = Column(String)
    payment_intent_id = Column(String, index=True)
    date = Column(DateTime, default=utcnow)
