from datetime import datetime, timezone

from entitlement_engine.conftest import NOW
from entitlement_engine.core.config import Settings
from entitlement_engine.engine import GovernanceEngine, build_window_counter
from entitlement_engine.features.ratelimit.redis_backend import RedisWindowCounter
from entitlement_engine.features.ratelimit.service import StoreWindowCounter
from entitlement_engine.store.memory import MemoryStore
from entitlement_engine.store.sql import SqlStore
from entitlement_engine.workers.rollover_worker import run_once


def test_from_settings_without_database_uses_memory(monkeypatch):
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    engine = GovernanceEngine.from_settings(Settings(ENV="test", DATABASE_URL=None))

    assert isinstance(engine.store, MemoryStore)
    assert engine.plans.get_base_plan("starter").limits["trainer"] == 5


def test_from_settings_with_database_uses_sql(monkeypatch, tmp_path):
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    cfg = Settings(ENV="test", DATABASE_URL=f"sqlite:///{tmp_path / 'engine.db'}", SEED_DEFAULT_PLANS=False)
    engine = GovernanceEngine.from_settings(cfg)

    assert isinstance(engine.store, SqlStore)
    assert engine.plans.list_plans() == []
    engine.store.engine.dispose()


def test_window_counter_backend():
    store = MemoryStore()
    assert isinstance(build_window_counter(store, Settings(RATE_LIMIT_BACKEND="store")), StoreWindowCounter)
    redis_counter = build_window_counter(
        store, Settings(RATE_LIMIT_BACKEND="redis", REDIS_URL="redis://localhost:6379/3")
    )
    assert isinstance(redis_counter, RedisWindowCounter)


def test_settings_flow_into_components(test_settings):
    cfg = test_settings.model_copy(update={"RESERVATION_TTL_SECONDS": 60, "RATE_WINDOW_SECONDS": 10})
    engine = GovernanceEngine(MemoryStore(), settings_obj=cfg)
    assert engine.budgets.reservation_ttl.total_seconds() == 60
    assert engine.rate_limiter.window_seconds == 10


def test_worker_pass_summary(governance, make_tenant):
    make_tenant(governance, "gym-1")
    governance.ledger.try_consume("gym-1", "api_calls", 5, now=NOW)
    governance.budgets.reserve("gym-1", "openai", 100, now=NOW)

    summary = run_once(governance, now=datetime(2026, 4, 1, 0, 5, tzinfo=timezone.utc))

    assert summary["periods_rolled"] == ["2026-03"]
    assert summary["counters_frozen"] == 1
    assert summary["budgets_frozen"] == 2
    assert summary["reservations_expired"] == 1

    again = run_once(governance, now=datetime(2026, 4, 1, 0, 10, tzinfo=timezone.utc))
    assert again["periods_rolled"] == []
    assert again["counters_frozen"] == 0
