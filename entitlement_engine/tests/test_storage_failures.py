"""
Storage Outage Tests

Verify the degraded-mode contract when counter/budget storage is unreachable:
1. consume and reserve fail closed with storage_unavailable
2. release and cancel fail open (reported as deferred)
3. confirm raises so the caller can retry
4. snapshots report degraded, the rate limiter allows
5. Service resumes with no lost or double-applied state once storage is back
"""

import pytest

from entitlement_engine.conftest import NOW
from entitlement_engine.core.errors import StorageUnavailable
from entitlement_engine.models.budget import BudgetDenial, ReservationStatus
from entitlement_engine.models.usage import DenialReason


@pytest.fixture
def outage(failing_governance, failing_store, make_tenant):
    make_tenant(failing_governance, "gym-1", "starter")
    failing_governance.ledger.try_consume("gym-1", "clients", 3, now=NOW)
    failing_store.failing = True
    return failing_governance


def test_consume_fails_closed(outage):
    result = outage.ledger.try_consume("gym-1", "clients", now=NOW)
    assert not result.granted
    assert result.reason == DenialReason.STORAGE_UNAVAILABLE
    with pytest.raises(StorageUnavailable):
        result.raise_if_denied()


def test_unlimited_consume_needs_no_storage(failing_governance, failing_store, make_tenant):
    make_tenant(failing_governance, "big-1", "enterprise")
    failing_store.failing = True
    assert failing_governance.ledger.try_consume("big-1", "api_calls", now=NOW).granted


def test_release_is_deferred(outage, failing_store):
    result = outage.ledger.release("gym-1", "clients", 1, "op-1", now=NOW)
    assert result.deferred
    assert result.released == 0

    failing_store.failing = False
    assert outage.ledger.snapshot("gym-1", "clients", now=NOW).consumed == 3


def test_snapshot_is_degraded(outage):
    snapshot = outage.ledger.snapshot("gym-1", "clients", now=NOW)
    assert snapshot.degraded
    assert snapshot.limit == 50


def test_health_skips_unreadable_counters(outage):
    snapshot = outage.health.assess("gym-1", now=NOW)
    assert snapshot.components.usage == 50.0


def test_reserve_fails_closed(outage):
    result = outage.budgets.reserve("gym-1", "openai", 100, now=NOW)
    assert not result.granted
    assert result.reason == BudgetDenial.STORAGE_UNAVAILABLE
    assert result.code == StorageUnavailable.code


def test_confirm_raises_and_can_be_retried(outage, failing_store):
    failing_store.failing = False
    reservation = outage.budgets.reserve("gym-1", "openai", 100, now=NOW)
    failing_store.failing = True

    with pytest.raises(StorageUnavailable):
        outage.budgets.confirm(reservation.reservation_id, 80, now=NOW)

    failing_store.failing = False
    assert outage.budgets.get_reservation(reservation.reservation_id).status == ReservationStatus.PENDING
    assert outage.budgets.confirm(reservation.reservation_id, 80, now=NOW).ok
    assert outage.budgets.get_budget("gym-1", "openai", now=NOW).consumed_tokens == 80


def test_cancel_is_deferred(outage, failing_store):
    failing_store.failing = False
    reservation = outage.budgets.reserve("gym-1", "openai", 100, now=NOW)
    failing_store.failing = True

    result = outage.budgets.cancel(reservation.reservation_id, now=NOW)
    assert result.ok and result.deferred

    failing_store.failing = False
    assert outage.budgets.get_reservation(reservation.reservation_id).status == ReservationStatus.PENDING


def test_rate_limiter_fails_open(outage):
    decision = outage.rate_limiter.check("gym-1", "api", now=NOW)
    assert decision.allowed
    assert decision.degraded


def test_sweep_surfaces_outage(outage):
    with pytest.raises(StorageUnavailable):
        outage.scheduler.sweep(now=NOW)
