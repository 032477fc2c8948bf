"""Periodic rollover of ended periods plus the reservation/rate-window sweep."""
import argparse
import logging
import time
from typing import Optional

from entitlement_engine.core.config import settings
from entitlement_engine.core.logging import configure_logging
from entitlement_engine.engine import GovernanceEngine

logger = logging.getLogger("entitlements.workers.rollover")


def run_once(engine: GovernanceEngine, *, now=None) -> dict:
    report = engine.scheduler.run_due(now=now)
    summary = {
        "periods_rolled": [r.period_id for r in report.rollovers if not r.skipped],
        "counters_frozen": sum(r.counters_frozen for r in report.rollovers),
        "budgets_frozen": sum(r.budgets_frozen for r in report.rollovers),
        "reservations_expired": report.sweep.reservations_expired
        + sum(r.reservations_expired for r in report.rollovers),
        "reservations_carried": sum(r.reservations_carried for r in report.rollovers),
        "windows_purged": report.sweep.windows_purged,
    }
    logger.info("[rollover] pass complete", extra=summary)
    return summary


def run_forever(engine: GovernanceEngine, *, interval_seconds: Optional[int] = None) -> None:
    interval = interval_seconds or settings.ROLLOVER_INTERVAL_SECONDS
    logger.info("[rollover] worker started", extra={"interval_seconds": interval})
    while True:
        try:
            run_once(engine)
        except Exception:
            # a failed pass is retried on the next tick
            logger.exception("[rollover] pass failed")
        time.sleep(interval)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Roll over ended periods and sweep expired holds.")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    governance = GovernanceEngine.from_settings(settings)
    if args.once:
        print(run_once(governance))
    else:
        run_forever(governance)
