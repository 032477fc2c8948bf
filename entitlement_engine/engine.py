"""
entitlement_engine/engine.py

Wires the governance components around one explicit store handle.

Every component receives the store (and the resolver) it works against;
nothing reaches for module-level state, so tests build an engine on a
MemoryStore and deployments on a SqlStore.
"""

import logging
from typing import Optional

from entitlement_engine.core.config import Settings, settings as default_settings
from entitlement_engine.features.budgets.service import BudgetTracker
from entitlement_engine.features.entitlements.service import EntitlementResolver
from entitlement_engine.features.health.service import TenantHealthService
from entitlement_engine.features.periods.service import PeriodScheduler
from entitlement_engine.features.plans.service import PlanRegistry
from entitlement_engine.features.ratelimit.redis_backend import RedisWindowCounter
from entitlement_engine.features.ratelimit.service import RateLimiter, StoreWindowCounter, WindowCounter
from entitlement_engine.features.tenants.service import TenantAdmin
from entitlement_engine.features.uploads.service import UploadGuard
from entitlement_engine.features.usage.service import UsageLedger
from entitlement_engine.store.base import EngineStore
from entitlement_engine.store.factory import build_store


logger = logging.getLogger("entitlements")


def build_window_counter(store: EngineStore, settings_obj: Settings) -> WindowCounter:
    if settings_obj.RATE_LIMIT_BACKEND == "redis":
        logger.info("[ratelimit] using redis window counter")
        return RedisWindowCounter.from_url(settings_obj.REDIS_URL)
    return StoreWindowCounter(store)


class GovernanceEngine:
    def __init__(
        self,
        store: EngineStore,
        *,
        settings_obj: Optional[Settings] = None,
        window_counter: Optional[WindowCounter] = None,
    ):
        cfg = settings_obj or default_settings
        self.settings = cfg
        self.store = store
        self.plans = PlanRegistry(store)
        self.tenants = TenantAdmin(store, self.plans)
        self.resolver = EntitlementResolver(store, self.plans)
        self.ledger = UsageLedger(store, self.resolver)
        self.budgets = BudgetTracker(
            store, self.resolver, reservation_ttl_seconds=cfg.RESERVATION_TTL_SECONDS
        )
        self.rate_limiter = RateLimiter(
            self.resolver,
            window_counter or build_window_counter(store, cfg),
            window_seconds=cfg.RATE_WINDOW_SECONDS,
        )
        self.scheduler = PeriodScheduler(
            store,
            self.rate_limiter,
            rate_window_retention_seconds=cfg.RATE_WINDOW_RETENTION_SECONDS,
        )
        self.health = TenantHealthService(self.ledger)
        self.uploads = UploadGuard(self.resolver, self.ledger)

    @classmethod
    def from_settings(cls, settings_obj: Optional[Settings] = None) -> "GovernanceEngine":
        cfg = settings_obj or default_settings
        engine = cls(build_store(cfg), settings_obj=cfg)
        if cfg.SEED_DEFAULT_PLANS:
            engine.plans.seed_plans()
        return engine
