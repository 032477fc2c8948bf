"""
In-memory engine store.

Every public method runs under one re-entrant lock, so the check and the
mutation of consume_counter / reserve_budget are never interleaved with
another caller. State lives on the instance; there is no module-level cache.
"""
import threading
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from entitlement_engine.core.errors import ConflictError, PeriodClosedError, TenantNotFoundError
from entitlement_engine.features.periods.calendar import PeriodWindow
from entitlement_engine.models.audit import AuditAction, AuditRecord
from entitlement_engine.models.budget import (
    BudgetDenial,
    BudgetState,
    Reservation,
    ReservationStatus,
    SettlementError,
)
from entitlement_engine.models.plan import PlanDefinition
from entitlement_engine.models.resources import GLOBAL_PROVIDER, UNLIMITED
from entitlement_engine.models.tenant import TenantEntitlementOverlay, TenantRecord
from entitlement_engine.models.usage import UsageCounter
from entitlement_engine.store.base import (
    BudgetCaps,
    CounterMutation,
    ReserveOutcome,
    RolloverOutcome,
    SettleOutcome,
)

CounterKey = Tuple[str, str, str]
BudgetKey = Tuple[str, str, str]


def _headroom(cap, used) -> Optional[float]:
    if cap == UNLIMITED:
        return None
    return cap - used


def _budget_denial(row: BudgetState, tokens: int, cost: float) -> Optional[float]:
    """Return remaining token headroom if the hold does not fit, else None."""
    token_room = _headroom(row.cap_tokens, row.consumed_tokens + row.reserved_tokens)
    cost_room = _headroom(row.cap_cost, row.consumed_cost + row.reserved_cost)
    if token_room is not None and tokens > token_room:
        return max(0, token_room)
    if cost_room is not None and cost > cost_room:
        return max(0, token_room) if token_room is not None else 0
    return None


class MemoryStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._plans: Dict[str, PlanDefinition] = {}
        self._tenants: Dict[str, TenantRecord] = {}
        self._overlays: Dict[str, TenantEntitlementOverlay] = {}
        self._counters: Dict[CounterKey, UsageCounter] = {}
        self._op_keys: Set[str] = set()
        self._budgets: Dict[BudgetKey, BudgetState] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._windows: Dict[Tuple[str, str, int], int] = {}
        self._audit: List[AuditRecord] = []

    # ------------------------------------------------------------------ plans

    def get_plan(self, plan_key: str) -> Optional[PlanDefinition]:
        with self._lock:
            return self._plans.get(plan_key)

    def save_plan(self, plan: PlanDefinition) -> PlanDefinition:
        with self._lock:
            self._plans[plan.plan_key] = plan
            return plan

    def list_plans(self) -> List[PlanDefinition]:
        with self._lock:
            return sorted(self._plans.values(), key=lambda p: p.plan_key)

    # ---------------------------------------------------------------- tenants

    def create_tenant(self, tenant: TenantRecord) -> TenantRecord:
        with self._lock:
            if tenant.tenant_id in self._tenants:
                raise ConflictError(f"tenant {tenant.tenant_id} already exists")
            self._tenants[tenant.tenant_id] = tenant
            self._overlays[tenant.tenant_id] = TenantEntitlementOverlay(
                tenant_id=tenant.tenant_id, updated_at=tenant.created_at
            )
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[TenantRecord]:
        with self._lock:
            return self._tenants.get(tenant_id)

    def set_tenant_plan(self, tenant_id: str, plan_key: str) -> TenantRecord:
        with self._lock:
            tenant = self._require_tenant(tenant_id)
            updated = tenant.model_copy(update={"plan_key": plan_key})
            self._tenants[tenant_id] = updated
            return updated

    def get_overlay(self, tenant_id: str) -> Optional[TenantEntitlementOverlay]:
        with self._lock:
            return self._overlays.get(tenant_id)

    def add_extra_slots(self, tenant_id: str, resource_key: str, delta: int, now: datetime) -> TenantEntitlementOverlay:
        with self._lock:
            overlay = self._require_overlay(tenant_id)
            slots = dict(overlay.extra_slots)
            slots[resource_key] = slots.get(resource_key, 0) + delta
            return self._put_overlay(overlay, now, extra_slots=slots)

    def zero_extra_slots(self, tenant_id: str, resource_key: Optional[str], now: datetime) -> TenantEntitlementOverlay:
        with self._lock:
            overlay = self._require_overlay(tenant_id)
            slots = dict(overlay.extra_slots)
            for key in ([resource_key] if resource_key else list(slots)):
                if key in slots:
                    slots[key] = 0
            return self._put_overlay(overlay, now, extra_slots=slots)

    def set_custom_plan(self, tenant_id: str, plan_key: Optional[str], now: datetime) -> TenantEntitlementOverlay:
        with self._lock:
            overlay = self._require_overlay(tenant_id)
            return self._put_overlay(overlay, now, custom_plan_key=plan_key)

    def _require_tenant(self, tenant_id: str) -> TenantRecord:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"tenant {tenant_id} not found")
        return tenant

    def _require_overlay(self, tenant_id: str) -> TenantEntitlementOverlay:
        overlay = self._overlays.get(tenant_id)
        if overlay is None:
            raise TenantNotFoundError(f"tenant {tenant_id} not found")
        return overlay

    def _put_overlay(self, overlay: TenantEntitlementOverlay, now: datetime, **changes) -> TenantEntitlementOverlay:
        # revalidate so negative slot counts are rejected here too
        updated = TenantEntitlementOverlay.model_validate({**overlay.model_dump(), **changes, "updated_at": now})
        self._overlays[overlay.tenant_id] = updated
        return updated

    # --------------------------------------------------------------- counters

    def _counter_row(self, tenant_id: str, resource_key: str, window: PeriodWindow) -> UsageCounter:
        key = (tenant_id, resource_key, window.period_id)
        counter = self._counters.get(key)
        if counter is None:
            counter = UsageCounter(
                tenant_id=tenant_id,
                resource_key=resource_key,
                period_id=window.period_id,
                period_start=window.start,
                period_end=window.end,
            )
        if counter.frozen:
            raise PeriodClosedError(f"period {window.period_id} is closed for {resource_key}")
        return counter

    def consume_counter(self, tenant_id, resource_key, window, amount, limit, op_key, now) -> CounterMutation:
        with self._lock:
            if op_key and op_key in self._op_keys:
                existing = self._counters.get((tenant_id, resource_key, window.period_id))
                return CounterMutation(applied=True, consumed=existing.consumed if existing else 0, replayed=True)
            counter = self._counter_row(tenant_id, resource_key, window)
            if counter.consumed + amount > limit:
                return CounterMutation(applied=False, consumed=counter.consumed)
            updated = counter.model_copy(update={"consumed": counter.consumed + amount, "last_mutation_at": now})
            self._counters[(tenant_id, resource_key, window.period_id)] = updated
            if op_key:
                self._op_keys.add(op_key)
            return CounterMutation(applied=True, consumed=updated.consumed, delta=amount)

    def release_counter(self, tenant_id, resource_key, window, amount, op_key, now) -> CounterMutation:
        with self._lock:
            existing = self._counters.get((tenant_id, resource_key, window.period_id))
            if op_key in self._op_keys:
                return CounterMutation(applied=True, consumed=existing.consumed if existing else 0, replayed=True)
            counter = self._counter_row(tenant_id, resource_key, window)
            delta = min(amount, counter.consumed)
            updated = counter.model_copy(update={"consumed": counter.consumed - delta, "last_mutation_at": now})
            if existing is not None or delta:
                self._counters[(tenant_id, resource_key, window.period_id)] = updated
            self._op_keys.add(op_key)
            return CounterMutation(applied=True, consumed=updated.consumed, delta=delta)

    def get_counter(self, tenant_id: str, resource_key: str, period_id: str) -> Optional[UsageCounter]:
        with self._lock:
            return self._counters.get((tenant_id, resource_key, period_id))

    def list_counters(self, tenant_id: Optional[str] = None, period_id: Optional[str] = None) -> List[UsageCounter]:
        with self._lock:
            return [
                c for c in self._counters.values()
                if (tenant_id is None or c.tenant_id == tenant_id)
                and (period_id is None or c.period_id == period_id)
            ]

    # ---------------------------------------------------------------- budgets

    def _budget_row(self, tenant_id: str, provider: str, window: PeriodWindow, cap_tokens: int, cap_cost: float) -> BudgetState:
        key = (tenant_id, provider, window.period_id)
        row = self._budgets.get(key)
        if row is None:
            row = BudgetState(
                tenant_id=tenant_id,
                provider=provider,
                period_id=window.period_id,
                period_start=window.start,
                period_end=window.end,
            )
        if row.frozen:
            raise PeriodClosedError(f"period {window.period_id} is closed for {provider}")
        # caps follow the current entitlement so plan changes apply immediately
        return row.model_copy(update={"cap_tokens": cap_tokens, "cap_cost": cap_cost})

    def reserve_budget(self, reservation: Reservation, caps: BudgetCaps, window: PeriodWindow) -> ReserveOutcome:
        with self._lock:
            provider_row = self._budget_row(
                reservation.tenant_id, reservation.provider, window, caps.provider_tokens, caps.provider_cost
            )
            global_row = self._budget_row(
                reservation.tenant_id, GLOBAL_PROVIDER, window, caps.global_tokens, caps.global_cost
            )
            for row, reason in ((provider_row, BudgetDenial.PROVIDER_CAP), (global_row, BudgetDenial.GLOBAL_CAP)):
                shortfall = _budget_denial(row, reservation.tokens, reservation.estimated_cost)
                if shortfall is not None:
                    return ReserveOutcome(granted=False, reason=reason, remaining_tokens=int(shortfall))

            remaining = []
            for row in (provider_row, global_row):
                held = row.model_copy(update={
                    "reserved_tokens": row.reserved_tokens + reservation.tokens,
                    "reserved_cost": row.reserved_cost + reservation.estimated_cost,
                })
                self._budgets[(row.tenant_id, row.provider, row.period_id)] = held
                if held.remaining_tokens is not None:
                    remaining.append(held.remaining_tokens)
            self._reservations[reservation.reservation_id] = reservation
            return ReserveOutcome(granted=True, remaining_tokens=min(remaining) if remaining else None)

    def _release_hold(self, reservation: Reservation) -> None:
        for provider in (reservation.provider, GLOBAL_PROVIDER):
            key = (reservation.tenant_id, provider, reservation.period_id)
            row = self._budgets.get(key)
            if row is None or row.frozen:
                continue
            self._budgets[key] = row.model_copy(update={
                "reserved_tokens": max(0, row.reserved_tokens - reservation.tokens),
                "reserved_cost": max(0.0, row.reserved_cost - reservation.estimated_cost),
            })

    def _book_actual(self, reservation: Reservation, tokens: int, cost: float) -> None:
        for provider in (reservation.provider, GLOBAL_PROVIDER):
            key = (reservation.tenant_id, provider, reservation.period_id)
            row = self._budgets.get(key)
            if row is None:
                continue
            self._budgets[key] = row.model_copy(update={
                "consumed_tokens": row.consumed_tokens + tokens,
                "consumed_cost": row.consumed_cost + cost,
            })

    def _expire(self, reservation: Reservation, now: datetime) -> None:
        self._release_hold(reservation)
        self._reservations[reservation.reservation_id] = reservation.model_copy(
            update={"status": ReservationStatus.EXPIRED, "settled_at": now}
        )

    def settle_reservation(self, reservation_id, status, actual_tokens, actual_cost, now) -> SettleOutcome:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is None:
                return SettleOutcome(ok=False, status=None, error=SettlementError.NOT_FOUND)
            if reservation.status == ReservationStatus.EXPIRED:
                return SettleOutcome(ok=False, status=reservation.status, error=SettlementError.EXPIRED)
            if reservation.status != ReservationStatus.PENDING:
                return SettleOutcome(ok=False, status=reservation.status, error=SettlementError.ALREADY_SETTLED)
            if reservation.expires_at <= now:
                self._expire(reservation, now)
                return SettleOutcome(ok=False, status=ReservationStatus.EXPIRED, error=SettlementError.EXPIRED)

            self._release_hold(reservation)
            refunded = overrun = 0
            if status == ReservationStatus.CONFIRMED:
                self._book_actual(reservation, actual_tokens, actual_cost)
                refunded = max(0, reservation.tokens - actual_tokens)
                overrun = max(0, actual_tokens - reservation.tokens)
            else:
                refunded = reservation.tokens
            self._reservations[reservation_id] = reservation.model_copy(update={
                "status": status,
                "settled_at": now,
                "actual_tokens": actual_tokens if status == ReservationStatus.CONFIRMED else None,
                "actual_cost": actual_cost if status == ReservationStatus.CONFIRMED else None,
            })
            return SettleOutcome(ok=True, status=status, refunded_tokens=refunded, overrun_tokens=overrun)

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._lock:
            return self._reservations.get(reservation_id)

    def get_budget(self, tenant_id: str, provider: str, period_id: str) -> Optional[BudgetState]:
        with self._lock:
            return self._budgets.get((tenant_id, provider, period_id))

    def list_budgets(self, tenant_id: Optional[str] = None, period_id: Optional[str] = None) -> List[BudgetState]:
        with self._lock:
            return [
                b for b in self._budgets.values()
                if (tenant_id is None or b.tenant_id == tenant_id)
                and (period_id is None or b.period_id == period_id)
            ]

    def expire_reservations(self, now: datetime) -> int:
        with self._lock:
            due = [
                r for r in self._reservations.values()
                if r.status == ReservationStatus.PENDING and r.expires_at <= now
            ]
            for reservation in due:
                self._expire(reservation, now)
            return len(due)

    # ----------------------------------------------------------- rate windows

    def incr_window(self, tenant_id: str, endpoint_class: str, window_start: int) -> int:
        with self._lock:
            key = (tenant_id, endpoint_class, window_start)
            self._windows[key] = self._windows.get(key, 0) + 1
            return self._windows[key]

    def purge_windows(self, older_than: int) -> int:
        with self._lock:
            stale = [key for key in self._windows if key[2] < older_than]
            for key in stale:
                del self._windows[key]
            return len(stale)

    # ------------------------------------------------------ rollover & audit

    def due_periods(self, now: datetime) -> List[str]:
        with self._lock:
            rows = list(self._counters.values()) + list(self._budgets.values())
            return sorted({
                r.period_id for r in rows
                if not r.frozen and r.period_end is not None and r.period_end <= now
            })

    def _carry_hold(self, reservation: Reservation, successor: PeriodWindow) -> None:
        """Move a live hold from the closed period onto the successor's rows."""
        for provider in (reservation.provider, GLOBAL_PROVIDER):
            old_key = (reservation.tenant_id, provider, reservation.period_id)
            old = self._budgets[old_key]
            self._budgets[old_key] = old.model_copy(update={
                "reserved_tokens": max(0, old.reserved_tokens - reservation.tokens),
                "reserved_cost": max(0.0, old.reserved_cost - reservation.estimated_cost),
            })
            new_key = (reservation.tenant_id, provider, successor.period_id)
            row = self._budgets[new_key]
            self._budgets[new_key] = row.model_copy(update={
                "reserved_tokens": row.reserved_tokens + reservation.tokens,
                "reserved_cost": row.reserved_cost + reservation.estimated_cost,
            })
        self._reservations[reservation.reservation_id] = reservation.model_copy(
            update={"period_id": successor.period_id}
        )

    def rollover_period(self, window: PeriodWindow, successor: PeriodWindow, now: datetime) -> RolloverOutcome:
        outcome = RolloverOutcome(period_id=window.period_id)
        with self._lock:
            pending = [
                r for r in self._reservations.values()
                if r.status == ReservationStatus.PENDING and r.period_id == window.period_id
            ]
            live = [r for r in pending if r.expires_at > now]
            for reservation in pending:
                if reservation.expires_at <= now:
                    self._expire(reservation, now)
            outcome.reservations_expired = len(pending) - len(live)

            for key, counter in list(self._counters.items()):
                if counter.period_id != window.period_id or counter.frozen:
                    continue
                if counter.period_end is None or counter.period_end > now:
                    continue
                self._counters[key] = counter.model_copy(update={"frozen": True})
                outcome.audit_records.append(AuditRecord(
                    action=AuditAction.COUNTER_FROZEN,
                    tenant_id=counter.tenant_id,
                    subject=counter.resource_key,
                    period_id=counter.period_id,
                    payload={"consumed": counter.consumed},
                    created_at=now,
                ))
                next_key = (counter.tenant_id, counter.resource_key, successor.period_id)
                if next_key not in self._counters:
                    self._counters[next_key] = UsageCounter(
                        tenant_id=counter.tenant_id,
                        resource_key=counter.resource_key,
                        period_id=successor.period_id,
                        period_start=successor.start,
                        period_end=successor.end,
                    )
                outcome.counters_frozen += 1

            for key, row in list(self._budgets.items()):
                if row.period_id != window.period_id or row.frozen:
                    continue
                if row.period_end is None or row.period_end > now:
                    continue
                self._budgets[key] = row.model_copy(update={"frozen": True})
                outcome.audit_records.append(AuditRecord(
                    action=AuditAction.BUDGET_FROZEN,
                    tenant_id=row.tenant_id,
                    subject=row.provider,
                    period_id=row.period_id,
                    payload={"consumed_tokens": row.consumed_tokens, "consumed_cost": row.consumed_cost},
                    created_at=now,
                ))
                next_key = (row.tenant_id, row.provider, successor.period_id)
                if next_key not in self._budgets:
                    self._budgets[next_key] = BudgetState(
                        tenant_id=row.tenant_id,
                        provider=row.provider,
                        period_id=successor.period_id,
                        cap_tokens=row.cap_tokens,
                        cap_cost=row.cap_cost,
                        period_start=successor.start,
                        period_end=successor.end,
                    )
                outcome.budgets_frozen += 1

            # successor rows exist now; live holds follow their reservation there
            for reservation in live:
                self._carry_hold(reservation, successor)
            outcome.reservations_carried = len(live)

            self._audit.extend(outcome.audit_records)
        return outcome

    def append_audit(self, record: AuditRecord) -> None:
        with self._lock:
            self._audit.append(record)

    def list_audit(self, tenant_id: Optional[str] = None, action: Optional[str] = None) -> List[AuditRecord]:
        with self._lock:
            return [
                r for r in self._audit
                if (tenant_id is None or r.tenant_id == tenant_id)
                and (action is None or r.action == action)
            ]
