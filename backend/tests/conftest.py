"""
Pytest configuration and fixtures for the ledger test suite

Markers:
    - unit: Fast unit tests
    - property: Property-based tests (Hypothesis)
    - integration: Tests that go through the HTTP surface
    - slow: Stress tests (excluded by default)
"""

import pytest
import sys
import os
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import models
from config import LedgerConfig, set_config
from database import build_engine, init_db
from sqlalchemy.orm import sessionmaker
from catalog_service import invalidate_catalog


# ═══════════════════════════════════════════════════════════════════════════════
# PYTEST CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "property: Property-based tests (Hypothesis)")
    config.addinivalue_line("markers", "integration: Tests that go through the HTTP surface")
    config.addinivalue_line("markers", "slow: Stress tests (excluded by default)")


def pytest_addoption(parser):
    """Add custom CLI options."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests"
    )


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless --run-slow is passed."""
    if config.getoption("--run-slow"):
        return

    skip_slow = pytest.mark.skip(reason="Need --run-slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="function")
def ledger_config():
    """Deterministic configuration, independent of the environment."""
    config = LedgerConfig(
        database_url="sqlite://",
        price_staleness_days=7,
        cpi_series="CUUR0000SA0",
        cpi_base_period="2020-01",
        reference_timeout_seconds=5,
        editors_can_grant=False,
        log_level="DEBUG",
    )
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture(scope="function")
def engine(ledger_config):
    """Fresh in-memory database with schema, ledger triggers and seeded catalogs."""
    invalidate_catalog()
    test_engine = build_engine("sqlite://")
    init_db(test_engine)
    yield test_engine
    invalidate_catalog()
    test_engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    """Create a fresh database session for each test"""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


# ═══════════════════════════════════════════════════════════════════════════════
# SAMPLE DATA
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def alice(db_session):
    from identity_service import on_user_signed_up
    return on_user_signed_up(db_session, "ext-alice", "alice@example.com", "Alice")


@pytest.fixture
def bob(db_session):
    from identity_service import on_user_signed_up
    return on_user_signed_up(db_session, "ext-bob", "bob@example.com", "Bob")


@pytest.fixture
def carol(db_session):
    from identity_service import on_user_signed_up
    return on_user_signed_up(db_session, "ext-carol", "carol@example.com", "Carol")


@pytest.fixture
def checking_account(db_session, alice):
    """Alice's checking account (Alice is owner)."""
    from access_service import create_account
    return create_account(db_session, alice.id, "Checking", "Checking")


@pytest.fixture
def brokerage_account(db_session, alice):
    """Alice's taxable brokerage account (Alice is owner)."""
    from access_service import create_account
    return create_account(db_session, alice.id, "Brokerage", "Brokerage")


@pytest.fixture
def voo(db_session):
    """Global VOO ETF asset."""
    from asset_service import create_asset
    return create_asset(db_session, "VOO", "Equity:ETF", description="Vanguard S&P 500 ETF")


@pytest.fixture
def payroll_row():
    """Payroll credit landing on an account that already held 3000.00."""
    return {
        "date": "2024-01-05",
        "description": "Payroll",
        "amount": "+2000.00",
        "balance": "5000.00",
        "category": "Income:Salary",
    }


@pytest.fixture
def cpi_points(db_session):
    """CPI-U values for the base period and early 2024."""
    from reference_data_service import store_cpi_points
    store_cpi_points(db_session, "CUUR0000SA0", [
        {"year": 2020, "month": 1, "value": Decimal("257.971")},
        {"year": 2024, "month": 1, "value": Decimal("308.417")},
        {"year": 2024, "month": 2, "value": Decimal("310.326")},
    ])


@pytest.fixture
def client(engine):
    """FastAPI TestClient bound to the per-test database."""
    from fastapi.testclient import TestClient
    from database import get_db
    from main import app

    Session = sessionmaker(bind=engine)

    def _override_get_db():
        db = Session()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    with_client = TestClient(app)
    yield with_client
    app.dependency_overrides.clear()