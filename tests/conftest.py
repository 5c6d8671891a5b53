from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.database import Base
from marketplace.main import app as fastapi_app
from marketplace.models import PaymentMethod, Service, ServiceOwner, SubscriptionTier, User
import marketplace.auth

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_marketplace.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

USER_ID = "user-1"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    """A paying consumer, a provider and one service with a paid and a free tier."""
    db.add_all([
        User(id=USER_ID, name="Consumer", email="consumer@example.com", stripe_customer_id="cus_1"),
        User(id="owner-1", name="Provider", email="provider@example.com"),
        Service(id="svc-1", name="Weather API"),
        ServiceOwner(service_id="svc-1", user_id="owner-1"),
        SubscriptionTier(id="tier-pro", service_id="svc-1", name="Pro",
                         price=Decimal("19.99"), features=["10k calls"]),
        SubscriptionTier(id="tier-free", service_id="svc-1", name="Free",
                         price=Decimal("0"), features=["100 calls"]),
        PaymentMethod(id="pm-1", user_id=USER_ID, stripe_customer_id="cus_1",
                      stripe_payment_id="pm_card_visa", card_brand="visa", last4="4242"),
    ])
    db.commit()
    return db


@pytest.fixture
def client(monkeypatch):
    # Point every module that opens sessions at the test database
    monkeypatch.setattr("marketplace.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("marketplace.main.SessionLocal", TestingSessionLocal)

    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[marketplace.auth.verify_token] = lambda: USER_ID

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
