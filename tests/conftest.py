import os
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from types import ModuleType

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any billing_sync imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


@contextmanager
def _session_scope() -> Iterator:
    db = _TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


mock_db_module = ModuleType("billing_sync.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine
mock_db_module.session_scope = _session_scope

# Also mock billing_sync.config to prevent .env loading
mock_config_module = ModuleType("billing_sync.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    stripe_secret_key = "sk_test_123"
    stripe_webhook_secret = "whsec_test_123"
    stripe_api_base = "https://api.stripe.test/v1"
    stripe_timeout_seconds = 10.0
    stripe_max_retries = 3
    stripe_webhook_tolerance_seconds = 300
    stripe_price_standard = "price_standard"
    stripe_price_premium = "price_premium"
    stripe_price_enterprise = "price_enterprise"
    billing_currency = "eur"
    frontend_url = "https://app.example.com"
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any billing_sync imports
sys.modules["billing_sync.config"] = mock_config_module
sys.modules["billing_sync.db"] = mock_db_module

os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"

# Now import the models - they'll use our mocked db module
from billing_sync.models.billing import (  # noqa: E402
    BillingPlan,
    Payment,
    PaymentStatus,
    PaymentType,
    Subscription,
    SubscriptionStatus,
)
from billing_sync.models.tenant import Tenant  # noqa: E402
from tests.fakes import FakeStripeGateway  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as conn:
            for table in reversed(TestBase.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture()
def fake_gateway():
    return FakeStripeGateway()


def _unique_email() -> str:
    return f"billing-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def tenant(db_session):
    tenant = Tenant(name="Acme Clinic", billing_email=_unique_email())
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant


@pytest.fixture()
def other_tenant(db_session):
    tenant = Tenant(name="Other Bakery", billing_email=_unique_email())
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant


@pytest.fixture()
def free_subscription(db_session, tenant):
    sub = Subscription(
        tenant_id=tenant.id,
        external_customer_id=f"temp_{tenant.id}",
        plan=BillingPlan.free,
        status=SubscriptionStatus.active,
    )
    db_session.add(sub)
    db_session.commit()
    db_session.refresh(sub)
    return sub


@pytest.fixture()
def premium_subscription(db_session, tenant, fake_gateway):
    """A tenant already subscribed to premium, mirrored in the fake gateway."""
    customer_id = fake_gateway.add_customer(email=tenant.billing_email)
    remote = fake_gateway.add_subscription(
        customer_id,
        "price_premium",
        metadata={"tenant_id": str(tenant.id), "plan": "premium"},
    )
    now = datetime.now(UTC)
    sub = Subscription(
        tenant_id=tenant.id,
        external_customer_id=customer_id,
        external_subscription_id=remote["id"],
        external_price_id="price_premium",
        plan=BillingPlan.premium,
        status=SubscriptionStatus.active,
        current_period_start=now - timedelta(days=3),
        current_period_end=now + timedelta(days=27),
    )
    db_session.add(sub)
    tenant.plan = BillingPlan.premium
    db_session.commit()
    db_session.refresh(sub)
    return sub


@pytest.fixture()
def make_payment(db_session):
    def _make(tenant, **overrides):
        values = {
            "tenant_id": tenant.id,
            "external_payment_intent_id": f"pi_{uuid.uuid4().hex[:16]}",
            "external_customer_id": "cus_test",
            "amount": 2900,
            "currency": "eur",
            "status": PaymentStatus.succeeded,
            "type": PaymentType.subscription,
        }
        values.update(overrides)
        payment = Payment(**values)
        db_session.add(payment)
        db_session.commit()
        db_session.refresh(payment)
        return payment

    return _make


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, fake_gateway):
    """Create a test client with database and gateway overrides."""
    from billing_sync.api.deps import get_db as api_get_db
    from billing_sync.api.deps import get_payment_gateway
    from billing_sync.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _create_access_token(tenant_id: str | None, subject: str = "user-1") -> str:
    """Create a JWT access token for testing."""
    secret = os.getenv("JWT_SECRET", "test-secret")
    algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    now = datetime.now(UTC)
    payload = {
        "sub": subject,
        "typ": "access",
        "exp": int((now + timedelta(minutes=15)).timestamp()),
        "iat": int(now.timestamp()),
    }
    if tenant_id is not None:
        payload["tenant_id"] = tenant_id
    return jwt.encode(payload, secret, algorithm=algorithm)


@pytest.fixture()
def tenant_headers(tenant):
    """Authorization headers for the ``tenant`` fixture."""
    return {"Authorization": f"Bearer {_create_access_token(str(tenant.id))}"}


@pytest.fixture()
def make_token():
    return _create_access_token
