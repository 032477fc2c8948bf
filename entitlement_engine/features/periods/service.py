"""
entitlement_engine/features/periods/service.py

Period scheduler: rollover of ended periods plus the reclaim sweep.

Rollover freezes every counter and budget row of an ended period, writes one
audit record per frozen row with its final value, and opens zeroed rows for
the next period, all in one store transaction. Running it again for a
closed period finds nothing unfrozen and is a no-op.

Pending reservations past their TTL are expired by rollover. Younger ones are
still in flight, so their hold moves to the next period's rows and a later
confirm books the real usage there.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from entitlement_engine.core.errors import ValidationError
from entitlement_engine.features.periods.calendar import next_window, normalize_now, window_from_id
from entitlement_engine.features.ratelimit.service import RateLimiter
from entitlement_engine.store.base import EngineStore


logger = logging.getLogger("entitlements.periods")

DEFAULT_RATE_WINDOW_RETENTION_SECONDS = 300

# Upper bound on chained rollovers in one run_due pass (a year of missed months)
MAX_ROLLOVER_PASSES = 12


@dataclass
class RolloverReport:
    period_id: str
    next_period_id: Optional[str] = None
    counters_frozen: int = 0
    budgets_frozen: int = 0
    reservations_expired: int = 0
    # unexpired holds moved onto the next period
    reservations_carried: int = 0
    audit_records: int = 0
    # the period has not ended yet
    skipped: bool = False


@dataclass
class SweepReport:
    reservations_expired: int = 0
    windows_purged: int = 0


@dataclass
class RunReport:
    rollovers: List[RolloverReport] = field(default_factory=list)
    sweep: SweepReport = field(default_factory=SweepReport)


class PeriodScheduler:
    def __init__(
        self,
        store: EngineStore,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        rate_window_retention_seconds: int = DEFAULT_RATE_WINDOW_RETENTION_SECONDS,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.rate_window_retention_seconds = rate_window_retention_seconds

    def rollover(self, period_id: str, *, now=None) -> RolloverReport:
        window = window_from_id(period_id)
        if window.is_standing:
            raise ValidationError("standing counters never roll over")
        stamp = normalize_now(now)
        if not window.has_ended(stamp):
            logger.info("[periods] rollover skipped, period still open", extra={"period_id": period_id})
            return RolloverReport(period_id=period_id, skipped=True)

        successor = next_window(window)
        outcome = self.store.rollover_period(window, successor, stamp)
        report = RolloverReport(
            period_id=period_id,
            next_period_id=successor.period_id,
            counters_frozen=outcome.counters_frozen,
            budgets_frozen=outcome.budgets_frozen,
            reservations_expired=outcome.reservations_expired,
            reservations_carried=outcome.reservations_carried,
            audit_records=len(outcome.audit_records),
        )
        logger.info(
            "[periods] ROLLED_OVER",
            extra={
                "period_id": period_id,
                "next_period_id": successor.period_id,
                "counters_frozen": report.counters_frozen,
                "budgets_frozen": report.budgets_frozen,
                "reservations_expired": report.reservations_expired,
                "reservations_carried": report.reservations_carried,
            },
        )
        return report

    def sweep(self, *, now=None) -> SweepReport:
        """Reclaim expired reservations and drop aged-out rate windows."""
        stamp = normalize_now(now)
        expired = self.store.expire_reservations(stamp)
        purged = 0
        if self.rate_limiter is not None:
            purged = self.rate_limiter.purge(self.rate_window_retention_seconds, now=stamp)
        if expired or purged:
            logger.info("[periods] swept", extra={"reservations_expired": expired, "windows_purged": purged})
        return SweepReport(reservations_expired=expired, windows_purged=purged)

    def run_due(self, *, now=None) -> RunReport:
        """Roll over every ended period that still has open rows, then sweep."""
        stamp = normalize_now(now)
        report = RunReport()
        for _ in range(MAX_ROLLOVER_PASSES):
            due = self.store.due_periods(stamp)
            if not due:
                break
            for period_id in due:
                report.rollovers.append(self.rollover(period_id, now=stamp))
        report.sweep = self.sweep(now=stamp)
        return report
