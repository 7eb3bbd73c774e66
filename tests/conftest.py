"""
Pytest configuration and shared fixtures.
"""
import pytest

from tradeledger.monitoring.logger import clear_run_context
from tradeledger.storage.db import init_db
from tradeledger.storage.gateway import PersistenceGateway


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture(autouse=True)
def _clean_run_context():
    """Run ids bound by one test must not leak into the next test's log lines."""
    yield
    clear_run_context()


@pytest.fixture()
def db():
    """Fresh in-memory SQLite database with all tables."""
    database = init_db("sqlite:///:memory:")
    yield database
    database.dispose()


@pytest.fixture()
def gateway(db):
    return PersistenceGateway(db)
