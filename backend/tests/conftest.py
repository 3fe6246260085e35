"""
Pytest fixtures for the topup back office tests.

Provides the app (in-memory SQLite, throwaway Fernet key), a clean database
per test, a test client and small seeding helpers.
"""

import pytest
from cryptography.fernet import Fernet

from topup import create_app
from topup.extensions import db
from topup.services import ledger_service, stock_service

TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()


def make_config(**overrides) -> dict:
    config = {
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_ENCRYPTION_KEY': TEST_ENCRYPTION_KEY,
        'STOCK_ENCRYPTION_PREVIOUS_KEYS': '',
        'DB_RETRY_BACKOFF': 0,
        'LOG_LEVEL': 'DEBUG',
    }
    config.update(overrides)
    return config


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(make_config())

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
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


def seed_pool(
    secrets=("PIN-0001-1111", "PIN-0002-2222", "PIN-0003-3333"),
    *,
    bucket_id="telia-100",
    credential_type="PIN",
    metadata=None,
):
    rows = [{"secret": s} for s in secrets]
    return stock_service.import_batch(
        bucket_id=bucket_id,
        credential_type=credential_type,
        rows=rows,
        metadata=metadata or {"name": "Telia 100 batch", "unit_price": "100"},
        operator_id="ops",
    ).pool


def seed_account(kind="CREDIT", retailer_id="R-1", limit_cents=1000, **kwargs):
    return ledger_service.open_account(kind, retailer_id, limit_cents, operator_id="ops", **kwargs)


@pytest.fixture(scope='function')
def pool(db_session):
    """Three-item PIN pool for bucket telia-100."""
    return seed_pool()


@pytest.fixture(scope='function')
def credit_account(db_session):
    """Credit account R-1 with a limit of 1000 cents."""
    return seed_account()
