"""
Engine store protocol.

Defines the persistence interface every component receives explicitly.
MemoryStore backs tests and single-process use; SqlStore backs deployments
with DATABASE_URL set. Both must make consume_counter and reserve_budget
single indivisible read-modify-writes.

Infrastructure faults surface as StorageUnavailable. A mutation against a
frozen (rolled-over) row raises PeriodClosedError.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from entitlement_engine.features.periods.calendar import PeriodWindow
from entitlement_engine.models.audit import AuditRecord
from entitlement_engine.models.budget import BudgetState, Reservation, ReservationStatus
from entitlement_engine.models.plan import PlanDefinition
from entitlement_engine.models.tenant import TenantEntitlementOverlay, TenantRecord
from entitlement_engine.models.usage import UsageCounter


@dataclass
class CounterMutation:
    """Outcome of an atomic counter change."""
    applied: bool
    consumed: int
    replayed: bool = False
    # amount actually removed by a release (floors at zero)
    delta: int = 0


@dataclass
class BudgetCaps:
    provider_tokens: int
    provider_cost: float
    global_tokens: int
    global_cost: float = -1.0


@dataclass
class ReserveOutcome:
    granted: bool
    reason: Optional[str] = None
    remaining_tokens: Optional[int] = None


@dataclass
class SettleOutcome:
    ok: bool
    status: Optional[ReservationStatus]
    error: Optional[str] = None
    refunded_tokens: int = 0
    overrun_tokens: int = 0


@dataclass
class RolloverOutcome:
    period_id: str
    counters_frozen: int = 0
    budgets_frozen: int = 0
    reservations_expired: int = 0
    reservations_carried: int = 0
    audit_records: List[AuditRecord] = field(default_factory=list)


class EngineStore(Protocol):
    # -- plans ---------------------------------------------------------------
    def get_plan(self, plan_key: str) -> Optional[PlanDefinition]: ...

    def save_plan(self, plan: PlanDefinition) -> PlanDefinition:
        """Insert or replace the stored plan under its key."""
        ...

    def list_plans(self) -> List[PlanDefinition]: ...

    # -- tenants and overlays ------------------------------------------------
    def create_tenant(self, tenant: TenantRecord) -> TenantRecord:
        """Create the tenant and its empty overlay. ConflictError if it exists."""
        ...

    def get_tenant(self, tenant_id: str) -> Optional[TenantRecord]: ...

    def set_tenant_plan(self, tenant_id: str, plan_key: str) -> TenantRecord: ...

    def get_overlay(self, tenant_id: str) -> Optional[TenantEntitlementOverlay]: ...

    def add_extra_slots(self, tenant_id: str, resource_key: str, delta: int, now: datetime) -> TenantEntitlementOverlay: ...

    def zero_extra_slots(self, tenant_id: str, resource_key: Optional[str], now: datetime) -> TenantEntitlementOverlay: ...

    def set_custom_plan(self, tenant_id: str, plan_key: Optional[str], now: datetime) -> TenantEntitlementOverlay: ...

    # -- usage counters ------------------------------------------------------
    def consume_counter(
        self,
        tenant_id: str,
        resource_key: str,
        window: PeriodWindow,
        amount: int,
        limit: int,
        op_key: Optional[str],
        now: datetime,
    ) -> CounterMutation:
        """Increment by amount only if the result stays within limit."""
        ...

    def release_counter(
        self,
        tenant_id: str,
        resource_key: str,
        window: PeriodWindow,
        amount: int,
        op_key: str,
        now: datetime,
    ) -> CounterMutation:
        """Decrement by amount, flooring at zero. Applied at most once per op_key."""
        ...

    def get_counter(self, tenant_id: str, resource_key: str, period_id: str) -> Optional[UsageCounter]: ...

    def list_counters(self, tenant_id: Optional[str] = None, period_id: Optional[str] = None) -> List[UsageCounter]: ...

    # -- budgets -------------------------------------------------------------
    def reserve_budget(self, reservation: Reservation, caps: BudgetCaps, window: PeriodWindow) -> ReserveOutcome:
        """Hold tokens/cost on the provider row and the global row, or neither."""
        ...

    def settle_reservation(
        self,
        reservation_id: str,
        status: ReservationStatus,
        actual_tokens: int,
        actual_cost: float,
        now: datetime,
    ) -> SettleOutcome: ...

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]: ...

    def get_budget(self, tenant_id: str, provider: str, period_id: str) -> Optional[BudgetState]: ...

    def list_budgets(self, tenant_id: Optional[str] = None, period_id: Optional[str] = None) -> List[BudgetState]: ...

    def expire_reservations(self, now: datetime) -> int:
        """Reclaim pending reservations whose expires_at has passed."""
        ...

    # -- rate windows --------------------------------------------------------
    def incr_window(self, tenant_id: str, endpoint_class: str, window_start: int) -> int: ...

    def purge_windows(self, older_than: int) -> int: ...

    # -- rollover and audit --------------------------------------------------
    def due_periods(self, now: datetime) -> List[str]:
        """Period ids that still have unfrozen rows whose period_end has passed."""
        ...

    def rollover_period(self, window: PeriodWindow, successor: PeriodWindow, now: datetime) -> RolloverOutcome:
        """Freeze every unfrozen row of window, audit it, and open successor rows. One transaction."""
        ...

    def append_audit(self, record: AuditRecord) -> None: ...

    def list_audit(self, tenant_id: Optional[str] = None, action: Optional[str] = None) -> List[AuditRecord]: ...
