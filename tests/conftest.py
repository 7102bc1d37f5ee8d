import os

# 1. Set required environment variables before the app modules are imported
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["ADMIN_OWNER_IDS"] = '["admin-1"]'
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["RESEND_API_KEY"] = ""

from datetime import datetime  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from billing_service.core.config import Settings, get_settings  # noqa: E402
from billing_service.core.errors import ProviderError  # noqa: E402
from billing_service.db.base import Base  # noqa: E402
from billing_service.db.session import get_db  # noqa: E402
from billing_service.main import app  # noqa: E402
from billing_service.models import Subscription  # noqa: E402
from billing_service.services.razorpay_client import ExternalCycleState, get_provider  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, 0)


class FakeProvider:
    """Stands in for RazorpayClient. Records every call; failures are configured per external id."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.cycle_states = {}
        self.failing = set()
        self.cancelled = []
        self.created = []
        self.state_calls = []

    def create_recurring_plan(self, plan, owner_id, email=None):
        if "create" in self.failing:
            raise ProviderError("Razorpay returned 500 for /subscriptions")
        external_id = f"sub_test_{len(self.created) + 1}"
        self.created.append((plan, owner_id, email))
        return external_id

    def cancel_recurring_plan(self, external_id, immediate=True):
        if external_id in self.failing:
            raise ProviderError(f"Razorpay returned 502 for /subscriptions/{external_id}/cancel")
        self.cancelled.append((external_id, immediate))
        return True

    def get_cycle_state(self, external_id):
        self.state_calls.append(external_id)
        if external_id in self.failing:
            raise ProviderError(f"Razorpay timeout on /subscriptions/{external_id}")
        return self.cycle_states[external_id]

    def set_cycle(self, external_id, status="active", start=None, end=None, paid_count=1):
        self.cycle_states[external_id] = ExternalCycleState(
            status=status,
            current_cycle_start=start,
            current_cycle_end=end,
            paid_count=paid_count,
        )


@pytest.fixture
def settings():
    return Settings(
        APP_ENV="test",
        JWT_SECRET="test-jwt-secret",
        CRON_SECRET="test-cron-secret",
        ADMIN_OWNER_IDS=["admin-1"],
        RAZORPAY_KEY_ID="rzp_test_key",
        RAZORPAY_KEY_SECRET="rzp_test_secret",
        RAZORPAY_WEBHOOK_SECRET="whsec_test",
        RESEND_API_KEY="",
        RECONCILE_WORKERS=3,
    )


@pytest.fixture
def db_session():
    """
    Creates a new in-memory database session for a test.
    StaticPool keeps one connection so the TestClient's threads see the same data.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def client(db_session, fake_provider, settings):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_provider] = lambda: fake_provider
    app.dependency_overrides[get_settings] = lambda: settings
    c = TestClient(app)
    yield c
    app.dependency_overrides = {}


@pytest.fixture
def make_token():
    def _make(sub="owner-1", email="owner1@example.com", secret="test-jwt-secret"):
        claims = {"sub": sub}
        if email:
            claims["email"] = email
        return jwt.encode(claims, secret, algorithm="HS256")
    return _make


@pytest.fixture
def auth_headers(make_token):
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def make_subscription(db_session):
    def _make(owner_id="owner-1", **fields):
        values = {
            "plan": "monthly",
            "is_active": True,
            "autopay_enabled": True,
            "created_at": NOW,
            "updated_at": NOW,
        }
        values.update(fields)
        subscription = Subscription(owner_id=owner_id, **values)
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription
    return _make
