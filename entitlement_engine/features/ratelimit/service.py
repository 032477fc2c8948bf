"""
entitlement_engine/features/ratelimit/service.py

Short-window request-frequency guard.

Fixed windows keyed by floor(now / window_seconds). Every check increments
the window's count and is allowed while the count stays within the limit.
Independent of the usage ledger: the two never share a cap.
If the tenant's limit or the window counter cannot be read, the limiter
fails open and marks the decision degraded.
"""

import logging
import math
from dataclasses import dataclass
from typing import Protocol

from entitlement_engine.core.errors import StorageUnavailable
from entitlement_engine.features.entitlements.service import EntitlementResolver
from entitlement_engine.features.periods.calendar import normalize_now
from entitlement_engine.models.resources import UNLIMITED
from entitlement_engine.store.base import EngineStore


logger = logging.getLogger("entitlements.ratelimit")

DEFAULT_WINDOW_SECONDS = 60


class WindowCounter(Protocol):
    def incr(self, tenant_id: str, endpoint_class: str, window_start: int, ttl_seconds: int) -> int: ...

    def purge(self, older_than: int) -> int: ...


class StoreWindowCounter:
    """Window counts kept in the engine store (memory or SQL)."""

    def __init__(self, store: EngineStore):
        self.store = store

    def incr(self, tenant_id: str, endpoint_class: str, window_start: int, ttl_seconds: int) -> int:
        return self.store.incr_window(tenant_id, endpoint_class, window_start)

    def purge(self, older_than: int) -> int:
        return self.store.purge_windows(older_than)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    tenant_id: str
    endpoint_class: str
    limit: int
    current: int
    remaining: int
    reset_at: int
    retry_after: int
    # counter unreachable, allowed without counting
    degraded: bool = False


class RateLimiter:
    def __init__(
        self,
        resolver: EntitlementResolver,
        counter: WindowCounter,
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.resolver = resolver
        self.counter = counter
        self.window_seconds = window_seconds

    def _window_limit(self, per_minute: int) -> int:
        return max(1, math.ceil(per_minute * self.window_seconds / 60))

    def check(self, tenant_id: str, endpoint_class: str, *, now=None) -> RateDecision:
        ts = normalize_now(now).timestamp()
        window_start = int(ts // self.window_seconds) * self.window_seconds
        reset_at = window_start + self.window_seconds

        try:
            per_minute = self.resolver.resolve_rate_limit(tenant_id, endpoint_class)
        except StorageUnavailable:
            logger.warning(
                "[ratelimit] limit unreadable, allowing",
                extra={"tenant_id": tenant_id, "endpoint_class": endpoint_class},
            )
            return RateDecision(True, tenant_id, endpoint_class, UNLIMITED, 0, 0, reset_at, 0, degraded=True)

        if per_minute == UNLIMITED:
            return RateDecision(True, tenant_id, endpoint_class, UNLIMITED, 0, 0, reset_at, 0)

        limit = self._window_limit(per_minute)
        try:
            current = self.counter.incr(tenant_id, endpoint_class, window_start, self.window_seconds)
        except StorageUnavailable:
            logger.warning(
                "[ratelimit] counter unavailable, allowing",
                extra={"tenant_id": tenant_id, "endpoint_class": endpoint_class},
            )
            return RateDecision(True, tenant_id, endpoint_class, limit, 0, limit, reset_at, 0, degraded=True)

        allowed = current <= limit
        retry_after = 0 if allowed else max(1, math.ceil(reset_at - ts))
        if not allowed:
            logger.warning(
                "[ratelimit] LIMITED",
                extra={
                    "tenant_id": tenant_id,
                    "endpoint_class": endpoint_class,
                    "limit": limit,
                    "current": current,
                    "retry_after": retry_after,
                },
            )
        return RateDecision(
            allowed=allowed,
            tenant_id=tenant_id,
            endpoint_class=endpoint_class,
            limit=limit,
            current=current,
            remaining=max(0, limit - current),
            reset_at=reset_at,
            retry_after=retry_after,
        )

    def allow(self, tenant_id: str, endpoint_class: str, *, now=None) -> bool:
        return self.check(tenant_id, endpoint_class, now=now).allowed

    def purge(self, retention_seconds: int, *, now=None) -> int:
        """Drop windows that started more than retention_seconds ago."""
        cutoff = int(normalize_now(now).timestamp()) - retention_seconds
        try:
            return self.counter.purge(cutoff)
        except StorageUnavailable:
            logger.warning("[ratelimit] purge skipped, counter unavailable")
            return 0
