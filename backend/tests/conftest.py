"""
Pytest fixtures for tillpoint backend tests.

Provides an in-memory app, a wiped database per test, product factories,
a fake M-Pesa client and actor headers for the test client.
"""

import pytest

from tillpoint import create_app
from tillpoint.extensions import db
from tillpoint.identity import Actor, ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER
from tillpoint.models import Product, WholesaleTier
from tillpoint.models.catalog import TAX_EXEMPT
from tillpoint.services.wiring import build_components, set_mpesa_client

from fakes import FakeMpesaClient


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'LOG_LEVEL': 'DEBUG',
    'MPESA_CONSUMER_KEY': 'test-key',
    'MPESA_CONSUMER_SECRET': 'test-secret',
    'MPESA_BUSINESS_SHORT_CODE': '174379',
    'MPESA_PASSKEY': 'test-passkey',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh database and a fresh fake gateway for each test."""
    # Clear all data but keep schema
    db.session.rollback()
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    set_mpesa_client(FakeMpesaClient(), app)

    yield db.session

    # Cleanup after test
    db.session.rollback()


@pytest.fixture(scope='function')
def fake_mpesa(app, db_session):
    return app.extensions["tillpoint"]["mpesa_client"]


@pytest.fixture(scope='function')
def components(app, db_session):
    return build_components(app)


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(stock=10, retail_price_cents=1000, tiers=[(min_qty, price)], ...)."""
    counter = {"n": 0}

    def _make(stock=10, retail_price_cents=1000, tax_mode=TAX_EXEMPT, tiers=(), **fields):
        counter["n"] += 1
        product = Product(
            sku=fields.pop("sku", f"SKU-{counter['n']:04d}"),
            name=fields.pop("name", f"Product {counter['n']}"),
            retail_price_cents=retail_price_cents,
            cost_price_cents=fields.pop("cost_price_cents", retail_price_cents // 2),
            stock_quantity=stock,
            tax_mode=tax_mode,
            **fields,
        )
        db_session.add(product)
        db_session.flush()
        for min_quantity, price_cents in tiers:
            db_session.add(WholesaleTier(
                product_id=product.id,
                min_quantity=min_quantity,
                price_cents=price_cents,
                is_active=True,
            ))
        db_session.commit()
        return product

    return _make


@pytest.fixture
def cashier():
    return Actor(id="cashier-1", role=ROLE_CASHIER)


@pytest.fixture
def manager():
    return Actor(id="manager-1", role=ROLE_MANAGER)


def actor_headers(actor_id, role):
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


@pytest.fixture
def cashier_headers():
    return actor_headers("cashier-1", ROLE_CASHIER)


@pytest.fixture
def other_cashier_headers():
    return actor_headers("cashier-2", ROLE_CASHIER)


@pytest.fixture
def manager_headers():
    return actor_headers("manager-1", ROLE_MANAGER)


@pytest.fixture
def admin_headers():
    return actor_headers("admin-1", ROLE_ADMIN)
