# entitlement_engine/conftest.py
from datetime import datetime, timezone

import pytest

from entitlement_engine.core.config import Settings
from entitlement_engine.core.database import create_all_tables, create_engine_for
from entitlement_engine.core.errors import StorageUnavailable
from entitlement_engine.engine import GovernanceEngine
from entitlement_engine.store.memory import MemoryStore
from entitlement_engine.store.sql import SqlStore

# Fixed clock for every test that passes now=... explicitly
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class FailingStore:
    """
    MemoryStore double whose counter, budget and rate-window operations raise
    StorageUnavailable while ``failing`` is set. Plan and tenant reads keep
    working, so entitlement resolution still succeeds.
    """

    FAILING_METHODS = frozenset({
        "consume_counter",
        "release_counter",
        "get_counter",
        "list_counters",
        "reserve_budget",
        "settle_reservation",
        "get_budget",
        "expire_reservations",
        "incr_window",
        "purge_windows",
    })

    def __init__(self, inner=None):
        self.inner = inner or MemoryStore()
        self.failing = False

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if name not in self.FAILING_METHODS:
            return attr

        def guarded(*args, **kwargs):
            if self.failing:
                raise StorageUnavailable(f"{name}: simulated outage")
            return attr(*args, **kwargs)

        return guarded


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def test_settings():
    return Settings(
        ENV="test",
        DATABASE_URL=None,
        RATE_LIMIT_BACKEND="store",
        RATE_WINDOW_SECONDS=60,
        RESERVATION_TTL_SECONDS=900,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def sql_store(tmp_path):
    engine = create_engine_for(f"sqlite:///{tmp_path / 'entitlements.db'}")
    create_all_tables(engine)
    yield SqlStore(engine)
    engine.dispose()


def _seeded(store, settings_obj):
    governance = GovernanceEngine(store, settings_obj=settings_obj)
    governance.plans.seed_plans(now=NOW)
    return governance


@pytest.fixture
def governance(memory_store, test_settings):
    """Engine on a MemoryStore with the default plans seeded."""
    return _seeded(memory_store, test_settings)


@pytest.fixture
def sql_governance(sql_store, test_settings):
    """Engine on a sqlite-backed SqlStore with the default plans seeded."""
    return _seeded(sql_store, test_settings)


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def failing_governance(failing_store, test_settings):
    return _seeded(failing_store, test_settings)


@pytest.fixture
def make_tenant():
    """create_tenant(governance, tenant_id, plan_key) with the category taken from the plan."""

    def _make(governance, tenant_id, plan_key="starter"):
        plan = governance.plans.get_base_plan(plan_key)
        return governance.tenants.create_tenant(tenant_id, plan.category, plan_key, now=NOW)

    return _make
