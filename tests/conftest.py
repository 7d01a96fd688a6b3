"""
Shared pytest fixtures for entitlement tests.

Everything runs against the in-memory store with a controllable clock unless
a test builds a SQLite-backed store itself.
"""

from datetime import datetime, timedelta, timezone

import pytest

from product_access.cache import EntitlementCache
from product_access.config import Settings
from product_access.engine import build_engine
from product_access.models import Product, TrialType
from product_access.store.memory import InMemoryEntitlementStore

D0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = D0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def make_products():
    return [
        Product(
            id="snappro",
            name="SnapPro",
            trial_type=TrialType.USAGE,
            trial_limit=10,
            sort_order=2,
            trial_features=("single_photo", "basic_enhance"),
        ),
        Product(
            id="analytics",
            name="Analytics",
            trial_type=TrialType.TIME,
            trial_limit=7,
            sort_order=3,
            trial_features=("dashboard_view",),
        ),
        Product(
            id="ai_concierge",
            name="AI Concierge",
            trial_type=TrialType.USAGE,
            trial_limit=25,
            sort_order=1,
        ),
        Product(id="legacy_reports", name="Legacy Reports", is_active=False, sort_order=9),
        Product(
            id="full_suite",
            name="Full Suite",
            sort_order=5,
            includes=("snappro", "analytics", "ai_concierge"),
        ),
    ]


@pytest.fixture
def products():
    return {p.id: p for p in make_products()}


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def store():
    return InMemoryEntitlementStore(
        products=make_products(),
        users=[{"id": "user-1", "email": "host@example.com", "full_name": "Pat Host"}],
    )


@pytest.fixture
def cache(monotonic):
    return EntitlementCache(redis_url=None, ttl_seconds=300, clock=monotonic)


@pytest.fixture
def engine(store, cache, clock):
    eng = build_engine(store, cache=cache, settings=Settings(), clock=clock)
    yield eng
    eng.close()
