"""
Pytest configuration and fixtures for backend tests.

WHAT: Provides test fixtures for database, API client, and test data
WHY: Reusable test setup ensures consistent testing environment
REFERENCES: All test files in bizinsights/tests/
"""

import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

# Must be set before bizinsights.security / bizinsights.database are imported
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-testing-only")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def test_db_engine():
    """Create in-memory SQLite engine for tests.

    StaticPool keeps one connection so every session sees the same memory
    database; savepoints are enabled the same way the app engine does it.
    """
    from bizinsights.database import enable_sqlite_savepoints
    from bizinsights.models import Base

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_session(test_db_engine):
    """Create database session for tests."""
    TestSessionLocal = sessionmaker(bind=test_db_engine, autoflush=False, autocommit=False)
    session = TestSessionLocal()

    yield session

    session.close()


# ============================================================================
# FastAPI App Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI app with the test database injected."""
    from bizinsights.database import get_db
    from bizinsights.main import create_app

    application = create_app()

    def override_get_db():
        yield test_db_session

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


# ============================================================================
# Authentication Fixtures
# ============================================================================

@pytest.fixture
def auth_headers(test_user):
    """Bearer header for test_user (JWT subject is the email)."""
    from bizinsights.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(test_user.email)}"}


@pytest.fixture
def outsider_headers(test_outsider):
    from bizinsights.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(test_outsider.email)}"}


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_organization(test_db_session):
    """Create test organization."""
    from bizinsights.models import Organization

    organization = Organization(name="Test Organization", slug="test-org")
    test_db_session.add(organization)
    test_db_session.commit()
    test_db_session.refresh(organization)
    return organization


@pytest.fixture
def test_organization_b(test_db_session):
    """Create second test organization (for isolation tests)."""
    from bizinsights.models import Organization

    organization = Organization(name="Test Organization B", slug="test-org-b")
    test_db_session.add(organization)
    test_db_session.commit()
    test_db_session.refresh(organization)
    return organization


@pytest.fixture
def test_user(test_db_session, test_organization):
    """Create test user as owner of test_organization."""
    from bizinsights.models import OrganizationMember, RoleEnum, User

    user = User(email="owner@example.com", name="Test Owner")
    test_db_session.add(user)
    test_db_session.flush()
    test_db_session.add(OrganizationMember(
        organization_id=test_organization.id,
        user_id=user.id,
        role=RoleEnum.owner,
    ))
    test_db_session.commit()
    test_db_session.refresh(user)
    return user


@pytest.fixture
def test_outsider(test_db_session, test_organization_b):
    """User that only belongs to test_organization_b."""
    from bizinsights.models import OrganizationMember, RoleEnum, User

    user = User(email="outsider@example.com", name="Outsider")
    test_db_session.add(user)
    test_db_session.flush()
    test_db_session.add(OrganizationMember(
        organization_id=test_organization_b.id,
        user_id=user.id,
        role=RoleEnum.owner,
    ))
    test_db_session.commit()
    test_db_session.refresh(user)
    return user


def _make_integration(db, organization, platform, account_id, **kwargs):
    from bizinsights.models import Integration, IntegrationStatusEnum

    integration = Integration(
        organization_id=organization.id,
        platform=platform,
        platform_account_id=account_id,
        status=kwargs.pop("status", IntegrationStatusEnum.active),
        granted_scopes=kwargs.pop("granted_scopes", []),
        meta=kwargs.pop("meta", {}),
        **kwargs,
    )
    db.add(integration)
    db.commit()
    db.refresh(integration)
    return integration


@pytest.fixture
def make_integration(test_db_session):
    """Factory: make_integration(organization, platform, account_id, **columns)."""
    def factory(organization, platform, account_id, **kwargs):
        return _make_integration(test_db_session, organization, platform, account_id, **kwargs)
    return factory


SHOPIFY_SECRET = "shopify-webhook-secret"
WOO_SECRET = "woo-webhook-secret"
STRIPE_SECRET = "whsec_test_secret"


@pytest.fixture
def shopify_integration(test_db_session, test_organization):
    from bizinsights.models import PlatformEnum

    return _make_integration(
        test_db_session, test_organization, PlatformEnum.shopify, "test-store.myshopify.com",
        granted_scopes=["read_orders", "read_customers"],
        meta={"webhook_secret": SHOPIFY_SECRET, "shop_name": "Test Store"},
    )


@pytest.fixture
def woocommerce_integration(test_db_session, test_organization):
    from bizinsights.models import PlatformEnum

    return _make_integration(
        test_db_session, test_organization, PlatformEnum.woocommerce, "https://shop.example.com",
        granted_scopes=["read_write", "read", "write"],
        meta={"webhook_secret": WOO_SECRET, "store_url": "https://shop.example.com"},
    )


@pytest.fixture
def stripe_integration(test_db_session, test_organization):
    from bizinsights.models import PlatformEnum

    return _make_integration(
        test_db_session, test_organization, PlatformEnum.stripe, "acct_123",
        granted_scopes=["read_only"],
        meta={"webhook_secret": STRIPE_SECRET},
    )


@pytest.fixture
def add_datapoint(test_db_session):
    """Factory: add_datapoint(integration, metric_type, value, date_recorded, **kwargs)."""
    from bizinsights.models import DataPoint

    def factory(integration, metric_type, value, date_recorded, source_key=None, meta=None):
        point = DataPoint(
            integration_id=integration.id,
            metric_type=metric_type,
            value=Decimal(str(value)),
            date_recorded=date_recorded,
            source_key=source_key,
            meta=meta or {},
        )
        test_db_session.add(point)
        test_db_session.commit()
        return point

    return factory


@pytest.fixture
def fixed_now():
    """Deterministic 'now' for aggregation and health tests."""
    return datetime(2026, 3, 15, 12, 0, 0)


@pytest.fixture
def days_ago(fixed_now):
    def factory(days, hours=0):
        return fixed_now - timedelta(days=days, hours=hours)
    return factory
