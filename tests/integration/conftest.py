"""Pytest fixtures for integration tests."""
import base64
import hashlib
import hmac
import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from src.keydispatch.models import Base
from src.keydispatch.main import app
from src.keydispatch.services.notifications import EmailDeliveryError, get_email_sender

WEBHOOK_SECRET = "test-secret-123"
SHOP_DOMAIN = "test-store.myshopify.com"


class FakeSender:
    """Records outbound mail instead of calling SendGrid."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, message):
        if self.fail:
            raise EmailDeliveryError("SendGrid returned 503")
        self.sent.append(message)


@pytest.fixture(scope="function")
def session_factory():
    """In-memory SQLite database shared by request handlers and background tasks."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(session_factory):
    """Create an in-memory SQLite database for integration testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture(scope="function")
def client(db, session_factory, sender):
    """Create a test client with a test database session and a fake mail sender."""
    def override_get_db():
        yield db

    from src.keydispatch import database
    app.dependency_overrides[database.get_db] = override_get_db
    app.dependency_overrides[database.get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_email_sender] = lambda: sender
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def set_webhook_secret(monkeypatch):
    """Set SHOPIFY_API_SECRET for webhook tests."""
    monkeypatch.setenv("SHOPIFY_API_SECRET", WEBHOOK_SECRET)
    monkeypatch.delenv("SENDGRID_WEBHOOK_VERIFY_KEY", raising=False)
    monkeypatch.delenv("ADMIN_NOTIFICATION_EMAIL", raising=False)
    monkeypatch.delenv("LOW_INVENTORY_THRESHOLD", raising=False)


@pytest.fixture
def shop_with_stock(client):
    """Register a shop and a managed product holding K1..K5."""
    shop = client.post("/shops", json={"shop_domain": SHOP_DOMAIN}).json()
    product = client.post(
        f"/shops/{shop['id']}/products",
        json={"shopify_product_id": 632910392, "product_name": "Pro License"},
    ).json()
    client.post(f"/products/{product['id']}/licenses", json={"licenses": ["K1", "K2", "K3", "K4", "K5"]})
    return shop, product


@pytest.fixture
def send_webhook(client):
    """Post a signed orders/create webhook."""
    def _send(payload, secret=WEBHOOK_SECRET, shop_domain=SHOP_DOMAIN, signature=None):
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        if signature is None:
            signature = base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode()
        headers = {"X-Shopify-Hmac-Sha256": signature, "Content-Type": "application/json"}
        if shop_domain:
            headers["X-Shopify-Shop-Domain"] = shop_domain
        return client.post("/webhooks/create", content=body, headers=headers)
    return _send
