from datetime import datetime, timedelta, timezone

import pytest
from dotenv import load_dotenv

from access_governance.events import EventSystem
from access_governance.models import Entitlement, SaasApp, TenantContext, User
from access_governance.service import GovernanceService
from access_governance.storage.memory import InMemoryGovernanceStore

# Load environment variables
load_dotenv()

# Test configuration
TEST_TENANT_ID = "test_tenant"
# A Wednesday, inside business hours.
NOW = datetime(2024, 6, 12, 10, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock for deterministic SLA and expiry checks."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def tenant_id():
    """Fixture to provide tenant ID for tests."""
    return TEST_TENANT_ID


@pytest.fixture
def ctx(tenant_id):
    return TenantContext(tenant_id=tenant_id)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(tenant_id):
    """In-memory store seeded with a small directory.

    alice holds QuickBooks, erin holds Stripe, bob holds both.
    """
    store = InMemoryGovernanceStore()
    store.add_user(User(id="mgr", tenant_id=tenant_id, name="Morgan Manager", email="morgan@example.com"))
    for user_id, name in (("alice", "Alice"), ("bob", "Bob"), ("erin", "Erin")):
        store.add_user(
            User(
                id=user_id,
                tenant_id=tenant_id,
                name=name,
                email=f"{user_id}@example.com",
                manager_id="mgr",
            )
        )
    store.add_user(User(id="carol", tenant_id=tenant_id, name="Carol", email="carol@example.com"))

    for app_id, name, risk in (
        ("quickbooks", "QuickBooks", 80),
        ("stripe", "Stripe", 60),
        ("github", "GitHub", 30),
        ("aws", "AWS Console", 90),
        ("slack", "Slack", 10),
    ):
        store.add_app(SaasApp(id=app_id, tenant_id=tenant_id, name=name, risk_score=risk))

    for user_id, app_id in (
        ("alice", "quickbooks"),
        ("erin", "stripe"),
        ("bob", "quickbooks"),
        ("bob", "stripe"),
    ):
        store.add_entitlement(Entitlement(tenant_id=tenant_id, user_id=user_id, app_id=app_id))
    return store


@pytest.fixture
def events():
    """Event system that records every emitted event."""
    system = EventSystem()
    system.recorded = []
    system.on("*", lambda name, payload: system.recorded.append((name, payload)))
    return system


@pytest.fixture
def service(store, events, clock):
    return GovernanceService(store=store, events=events, clock=clock)
