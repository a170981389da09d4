"""
Conftest for unit tests with in-process trade stores and mocked Supabase auth.

All tests in this directory are automatically marked as unit tests.
"""
import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock, Mock, patch
from datetime import datetime, timedelta, timezone
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Add parent directory to path to import main
backend_path = Path(__file__).parent.parent.parent
sys.path.insert(0, str(backend_path))

from main import app
from trading import MemoryTradeStore, TradingEngine
from trading.sql_store import SqlTradeStore


def pytest_collection_modifyitems(items):
    """Automatically mark all tests in this directory as unit tests."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)


class FakeClock:
    """Settable clock so tests can move past offer deadlines."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


def make_sqlite_store() -> SqlTradeStore:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = SqlTradeStore(engine)
    store.create_tables()
    return store


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Every engine test runs against both store implementations."""
    if request.param == "memory":
        return MemoryTradeStore(lock_timeout=2.0)
    return make_sqlite_store()


@pytest.fixture
def memory_store():
    """Memory store only, for tests that race real threads."""
    return MemoryTradeStore(lock_timeout=2.0)


@pytest.fixture
def engine(store, clock):
    return TradingEngine(store, clock=clock, max_ttl=timedelta(days=7))


@pytest.fixture
def memory_engine(memory_store, clock):
    return TradingEngine(memory_store, clock=clock)


# ============== Trade party fixtures ==============

@pytest.fixture
def owner_id():
    return "owner_user_123"


@pytest.fixture
def buyer_id():
    return "buyer_user_456"


@pytest.fixture
def stranger_id():
    return "stranger_user_789"


@pytest.fixture
def posted_offer(engine, owner_id):
    """Scenario offer: owner puts up wood:10 for iron:3, valid for one hour."""
    engine.ledger.grant(owner_id, "wood", 10)
    return engine.offers.create(
        owner_id,
        offering_items=[("wood", 10)],
        requesting_items=[("iron", 3)],
        message="Fresh timber",
        ttl=timedelta(hours=1),
        owner_display_name="Owner",
    )


# ============== API fixtures ==============

@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def mock_supabase():
    """Create a mock Supabase client."""
    mock = MagicMock()
    mock.auth.get_user.return_value = Mock(user=None)
    return mock


@pytest.fixture(autouse=True)
def mock_supabase_client(mock_supabase):
    """Automatically mock the Supabase client for all tests."""
    with patch("main.supabase", mock_supabase):
        yield mock_supabase


@pytest.fixture
def api_engine(clock):
    return TradingEngine(MemoryTradeStore(lock_timeout=2.0), clock=clock, max_ttl=timedelta(days=7))


@pytest.fixture(autouse=True)
def mock_trading_engine(api_engine):
    """Route every request to a fresh in-memory engine."""
    with patch("main.engine", api_engine):
        yield api_engine


@pytest.fixture
def auth_tokens(mock_supabase, owner_id, buyer_id, stranger_id):
    """Map bearer tokens to Supabase users and wire them into the auth mock."""
    users = {
        "owner-token": Mock(id=owner_id, email="owner@example.com", user_metadata={"username": "Owner"}),
        "buyer-token": Mock(id=buyer_id, email="buyer@example.com", user_metadata={}),
        "stranger-token": Mock(id=stranger_id, email=None, user_metadata=None),
    }
    mock_supabase.auth.get_user.side_effect = lambda token: Mock(user=users.get(token))
    return users


@pytest.fixture
def owner_headers(auth_tokens):
    return {"Authorization": "Bearer owner-token"}


@pytest.fixture
def buyer_headers(auth_tokens):
    return {"Authorization": "Bearer buyer-token"}


@pytest.fixture
def stranger_headers(auth_tokens):
    return {"Authorization": "Bearer stranger-token"}


@pytest.fixture
def admin_headers():
    with patch("main.ADMIN_API_KEY", "test-admin-key"):
        yield {"X-Admin-Key": "test-admin-key"}
