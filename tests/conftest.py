import hashlib
import hmac
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_storefront.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront.auth import CurrentUser, get_current_user
from storefront.database import Base
from storefront.main import app as fastapi_app
from storefront.models import Cart, CartItem
from storefront.notifications import NotificationDispatcher
from storefront.reconciliation import ReconciliationHandler
from storefront.routes import get_reconciler

SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

KHQR_SECRET = "khqr-test-secret"

SHIPPING_ADDRESS = {
    "address": "12 Street 240",
    "city": "Phnom Penh",
    "postalCode": "12000",
    "country": "KH",
}


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self):
        self.calls = []

    def notify(self, order, title, message=None):
        self.calls.append((order.id, title))


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def gateway_env(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("KHQR_MERCHANT_ID", "MERCHANT123")
    monkeypatch.setenv("KHQR_TERMINAL_ID", "TERM0001")
    monkeypatch.setenv("KHQR_BANK", "ACLEDA")
    monkeypatch.setenv("KHQR_WEBHOOK_SECRET", KHQR_SECRET)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("STORE_NAME", "Test Store")
    monkeypatch.setenv("STORE_CITY", "Phnom Penh")
    monkeypatch.setenv("PAYMENT_RATE_LIMIT", "100")


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def current_user():
    return {"user": CurrentUser(id="user-1", email="buyer@example.com")}


@pytest.fixture
def client(monkeypatch, dispatcher, current_user):
    # Point every route module at the test database
    monkeypatch.setattr("storefront.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("storefront.webhooks.SessionLocal", TestingSessionLocal)

    fastapi_app.dependency_overrides[get_current_user] = lambda: current_user["user"]
    fastapi_app.dependency_overrides[get_reconciler] = lambda: ReconciliationHandler(dispatcher)

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


def seed_cart(user_id, items):
    db = TestingSessionLocal()
    cart = Cart(user_id=user_id)
    for item in items:
        cart.items.append(CartItem(**item))
    db.add(cart)
    db.commit()
    db.close()


def khqr_post(client, payload, secret=KHQR_SECRET, signature=None):
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if signature is None and secret is not None:
        signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if signature:
        headers["X-KHQR-Signature"] = signature
    return client.post("/orders/webhook/khqr", content=body, headers=headers)


def create_order(client, payment_method="qr-bank", price=25.5, quantity=1, **extra):
    body = {
        "shippingAddress": SHIPPING_ADDRESS,
        "paymentMethod": payment_method,
        "items": [{"productId": "prod-1", "name": "Kettle", "price": price, "quantity": quantity}],
        **extra,
    }
    response = client.post("/orders", json=body)
    assert response.status_code == 201, response.json()
    return response.json()
