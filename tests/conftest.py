# tests/conftest.py
"""
Shared fixtures: a file-backed SQLite database (so worker threads in the
concurrency tests see each other's commits), a controllable clock, catalog
factories, a Flask test client and an in-memory SMTP outbox.
"""

import os
import smtplib
import tempfile
from decimal import Decimal
from datetime import timedelta
from uuid import uuid4

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'storefront_test.db')}"
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"
os.environ["EMAIL_ENABLED"] = "true"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_dummy"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"

from storefront.clock import utcnow  # noqa: E402
from storefront.database import Base, SessionLocal, engine  # noqa: E402
from storefront.models import Product, ProductVariant  # noqa: E402
from storefront.observability.metrics import reset_metrics  # noqa: E402

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Outbox:
    """Collects messages handed to smtplib; set ``fail_with`` to make sends raise."""

    def __init__(self):
        self.messages = []
        self.fail_with = None

    def smtp_factory(self):
        outbox = self

        class FakeSMTP:
            def __init__(self, host, port, timeout=None):
                if outbox.fail_with is not None:
                    raise outbox.fail_with

            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                return False

            def starttls(self):
                pass

            def login(self, username, password):
                pass

            def send_message(self, msg):
                outbox.messages.append(msg)

        return FakeSMTP


@pytest.fixture(scope="session", autouse=True)
def _tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_state():
    reset_metrics()
    yield
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    box = Outbox()
    monkeypatch.setattr(smtplib, "SMTP", box.smtp_factory())
    return box


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(utcnow().replace(microsecond=0))


@pytest.fixture
def make_product(db_session, clock):
    """Create and commit a product with variants; returns the product."""

    def _make(
        limited=True,
        inventory=5,
        variants=1,
        release=None,
        end=None,
        windowless=False,
        active=True,
        name=None,
        price=Decimal("120.00"),
    ):
        suffix = uuid4().hex[:8]
        if not windowless:
            release = release if release is not None else clock.now - timedelta(hours=1)
            end = end if end is not None else clock.now + timedelta(days=1)
        product = Product(
            name=name or f"Drop {suffix}",
            slug=f"drop-{suffix}",
            description="Limited run hoodie",
            price=price,
            images='[{"url": "https://cdn.example/hoodie.jpg"}]',
            is_active=active,
            is_limited_edition=limited,
            release_date=release,
            drop_end_date=end,
            max_quantity=inventory,
        )
        db_session.add(product)
        db_session.flush()
        sizes = ["S", "M", "L", "XL"]
        for index in range(variants):
            db_session.add(
                ProductVariant(
                    productID=product.productID,
                    sku=f"HOF-{suffix}-{index}",
                    size=sizes[index % len(sizes)],
                    color="Black",
                    inventory=inventory,
                )
            )
        db_session.commit()
        db_session.refresh(product)
        return product

    return _make


def address_payload(**overrides):
    payload = {
        "firstName": "Sam",
        "lastName": "Rivera",
        "address1": "12 Market St",
        "city": "Portland",
        "state": "OR",
        "postalCode": "97201",
        "country": "US",
    }
    payload.update(overrides)
    return payload


def order_payload(items, email=None, session_id=None, **overrides):
    """Checkout body as the storefront client sends it."""
    subtotal = sum(float(item.get("price", 120)) * item["quantity"] for item in items)
    payload = {
        "customerEmail": email or f"buyer-{uuid4().hex[:6]}@example.com",
        "shippingAddress": address_payload(),
        "billingAddress": address_payload(),
        "items": [{"price": 120, **item} for item in items],
        "subtotal": subtotal,
        "shipping": 0,
        "tax": 0,
        "total": subtotal,
    }
    if session_id:
        payload["sessionId"] = session_id
    payload.update(overrides)
    return payload


@pytest.fixture
def client():
    from storefront.main import app

    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client
