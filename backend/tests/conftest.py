"""
Pytest fixtures for stock ledger backend tests.

Provides in-memory database setup, category fixtures, and test client.
"""

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Category

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'LEDGER_LOCK_TIMEOUT_SECONDS': 1.0,
}


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "costing: Pure costing engine tests")
    config.addinivalue_line("markers", "inventory: Stock-in and product tests")
    config.addinivalue_line("markers", "sales: Sales workflow tests")
    config.addinivalue_line("markers", "audit: Reconciliation auditor tests")
    config.addinivalue_line("markers", "concurrent: Concurrency and transaction tests")
    config.addinivalue_line("markers", "reports: Profit report tests")
    config.addinivalue_line("markers", "api: HTTP route tests")


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
def category(db_session):
    """Size-less category (accessories, figures...)."""
    cat = Category(name="Accessories", sizes=[])
    db_session.add(cat)
    db_session.commit()
    return cat


@pytest.fixture(scope='function')
def sized_category(db_session):
    """Category whose stock-ins are broken down by size."""
    cat = Category(name="T-Shirts", sizes=["S", "M", "L"])
    db_session.add(cat)
    db_session.commit()
    return cat
