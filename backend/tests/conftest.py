"""
Pytest fixtures for stockledger backend tests.

Provides an in-memory application, per-test table wipe, a small two-merchant
catalog, and a recorder for low-stock events.
"""

import pytest

from stockledger import create_app
from stockledger.extensions import LOW_STOCK_LISTENERS, db
from stockledger.models import InventoryItem, Merchant, Shop
from stockledger.services import stock_transaction_service as coordinator

ACTOR = "user-17"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

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
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def merchant(db_session):
    merchant = Merchant(name="Corner Coffee", is_active=True)
    db_session.add(merchant)
    db_session.commit()
    return merchant


@pytest.fixture(scope='function')
def other_merchant(db_session):
    merchant = Merchant(name="Beta Books", is_active=True)
    db_session.add(merchant)
    db_session.commit()
    return merchant


@pytest.fixture(scope='function')
def shop(db_session, merchant):
    shop = Shop(merchant_id=merchant.id, name="Downtown", is_active=True)
    db_session.add(shop)
    db_session.commit()
    return shop


@pytest.fixture(scope='function')
def second_shop(db_session, merchant):
    shop = Shop(merchant_id=merchant.id, name="Harbour", is_active=True)
    db_session.add(shop)
    db_session.commit()
    return shop


@pytest.fixture(scope='function')
def foreign_shop(db_session, other_merchant):
    shop = Shop(merchant_id=other_merchant.id, name="Beta Main", is_active=True)
    db_session.add(shop)
    db_session.commit()
    return shop


def _make_item(db_session, merchant, name, sku, price_cents, low_stock_threshold=None):
    item = InventoryItem(
        merchant_id=merchant.id,
        name=name,
        sku=sku,
        price_cents=price_cents,
        low_stock_threshold=low_stock_threshold,
    )
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture(scope='function')
def beans(db_session, merchant):
    return _make_item(db_session, merchant, "Espresso Beans 1kg", "BEAN-1KG", 2499, low_stock_threshold=3)


@pytest.fixture(scope='function')
def cups(db_session, merchant):
    return _make_item(db_session, merchant, "Paper Cups (50)", "CUP-50", 650)


@pytest.fixture(scope='function')
def milk(db_session, merchant):
    return _make_item(db_session, merchant, "Oat Milk 1L", "OAT-1L", 329)


@pytest.fixture(scope='function')
def foreign_item(db_session, other_merchant):
    return _make_item(db_session, other_merchant, "Notebook", "NB-A5", 899)


@pytest.fixture(scope='function')
def stock_in():
    """Receive stock through the coordinator so the ledger stays complete."""
    def _stock_in(shop, item, quantity, actor_id=ACTOR):
        return coordinator.apply_stock_in(shop.id, item.id, quantity, actor_id)
    return _stock_in


@pytest.fixture(scope='function')
def low_stock_events(app):
    """Collect LowStockEvents dispatched during the test."""
    events = []
    listener = events.append
    listeners = app.extensions[LOW_STOCK_LISTENERS]
    listeners.append(listener)
    yield events
    listeners.remove(listener)
