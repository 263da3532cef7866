"""Pytest fixtures for unit tests."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.keydispatch import models, database
from src.keydispatch.models import Base
from src.keydispatch.services.notifications import EmailDeliveryError
from src.keydispatch.services.settings import default_settings


class FakeSender:
    """Records outbound mail instead of calling SendGrid."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, message):
        if self.fail:
            raise EmailDeliveryError("SendGrid returned 503")
        self.sent.append(message)

    def to(self, address):
        return [m for m in self.sent if m.to == address]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep a developer's .env from changing alert targets or thresholds."""
    monkeypatch.delenv("ADMIN_NOTIFICATION_EMAIL", raising=False)
    monkeypatch.delenv("LOW_INVENTORY_THRESHOLD", raising=False)


@pytest.fixture(scope="function")
def session_factory():
    """In-memory SQLite database shared by every session the factory opens."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def file_session_factory(tmp_path):
    """SQLite file opened through the service's own engine setup, for threaded tests."""
    engine = database.build_engine(f"sqlite:///{tmp_path / 'keydispatch.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def seed_file_shop(file_session_factory):
    """Shop, product (Shopify id 42) and settings in the file database, plus the given keys."""
    def _seed(keys):
        setup = file_session_factory()
        shop = models.Shop(shop_domain="race.myshopify.com")
        setup.add(shop)
        setup.flush()
        product = models.Product(shop_id=shop.id, shopify_product_id="42", product_name="Race")
        setup.add(product)
        setup.flush()
        setup.add_all([models.License(product_id=product.id, license_key=k) for k in keys])
        setup.add(models.ShopSettings(shop_id=shop.id, **default_settings()))
        setup.commit()
        ids = (shop.id, product.id)
        setup.close()
        return ids
    return _seed


@pytest.fixture(scope="function")
def db(session_factory):
    """Create an in-memory SQLite database for unit testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def shop(db):
    db_shop = models.Shop(shop_domain="test-store.myshopify.com")
    db.add(db_shop)
    db.commit()
    db.refresh(db_shop)
    return db_shop


@pytest.fixture
def product(db, shop):
    db_product = models.Product(shop_id=shop.id, shopify_product_id="632910392", product_name="Pro License")
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


@pytest.fixture
def add_keys(db):
    """Append license keys to a product's pool in the given order."""
    def _add(product, keys):
        db.add_all([models.License(product_id=product.id, license_key=k, allocated=False) for k in keys])
        db.commit()
    return _add


@pytest.fixture
def make_payload():
    """Build an orders/create body the way Shopify sends it."""
    def _make(order_id="1001", line_items=None, email="jon@example.com", **extra):
        payload = {
            "id": order_id,
            "order_number": order_id,
            "email": email,
            "financial_status": "paid",
            "customer": {"first_name": "Jon", "last_name": "Snow"},
            "line_items": line_items if line_items is not None else [
                {"id": 1, "product_id": 632910392, "quantity": 1, "title": "Pro License"}
            ],
        }
        payload.update(extra)
        return payload
    return _make
