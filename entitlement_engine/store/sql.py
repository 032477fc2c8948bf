"""
SQL engine store (SQLAlchemy Core).

Atomic operations are conditional UPDATEs inside one transaction:
"increment by N only if the result stays within the limit and the row is
not frozen". The caller learns the outcome from the rowcount and reads the
new value in the same transaction. Idempotency keys are inserted in that
transaction too, so a rejected mutation leaves no key behind.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import and_, case, delete, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError

from entitlement_engine.core.database import (
    audit_records,
    budget_reservations,
    budget_states,
    operation_keys,
    overlay_slots,
    plans,
    rate_windows,
    tenant_overlays,
    tenants,
    usage_counters,
)
from entitlement_engine.core.errors import (
    ConflictError,
    PeriodClosedError,
    StorageUnavailable,
    TenantNotFoundError,
    ValidationError,
)
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

logger = logging.getLogger("entitlements.store")


class _Rejected(Exception):
    """Internal: roll back the transaction and report a denial."""

    def __init__(self, consumed: int = 0, reason: Optional[str] = None, remaining: Optional[int] = None):
        super().__init__(reason or "rejected")
        self.consumed = consumed
        self.reason = reason
        self.remaining = remaining


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _counter_from_row(row) -> UsageCounter:
    return UsageCounter(
        tenant_id=row.tenant_id,
        resource_key=row.resource_key,
        period_id=row.period_id,
        consumed=row.consumed,
        period_start=_utc(row.period_start),
        period_end=_utc(row.period_end),
        last_mutation_at=_utc(row.last_mutation_at),
        frozen=bool(row.frozen),
    )


def _budget_from_row(row) -> BudgetState:
    return BudgetState(
        tenant_id=row.tenant_id,
        provider=row.provider,
        period_id=row.period_id,
        consumed_tokens=row.consumed_tokens,
        consumed_cost=row.consumed_cost,
        reserved_tokens=row.reserved_tokens,
        reserved_cost=row.reserved_cost,
        cap_tokens=row.cap_tokens,
        cap_cost=row.cap_cost,
        period_start=_utc(row.period_start),
        period_end=_utc(row.period_end),
        frozen=bool(row.frozen),
    )


def _reservation_from_row(row) -> Reservation:
    return Reservation(
        reservation_id=row.reservation_id,
        tenant_id=row.tenant_id,
        provider=row.provider,
        period_id=row.period_id,
        tokens=row.tokens,
        estimated_cost=row.estimated_cost,
        status=ReservationStatus(row.status),
        created_at=_utc(row.created_at),
        expires_at=_utc(row.expires_at),
        settled_at=_utc(row.settled_at),
        actual_tokens=row.actual_tokens,
        actual_cost=row.actual_cost,
    )


def _audit_from_row(row) -> AuditRecord:
    return AuditRecord(
        action=row.action,
        tenant_id=row.tenant_id,
        subject=row.subject,
        period_id=row.period_id,
        payload=row.payload or {},
        actor=row.actor,
        created_at=_utc(row.created_at),
    )


def _counter_key(tenant_id: str, resource_key: str, period_id: str):
    return and_(
        usage_counters.c.tenant_id == tenant_id,
        usage_counters.c.resource_key == resource_key,
        usage_counters.c.period_id == period_id,
    )


def _budget_key(tenant_id: str, provider: str, period_id: str):
    return and_(
        budget_states.c.tenant_id == tenant_id,
        budget_states.c.provider == provider,
        budget_states.c.period_id == period_id,
    )


def _floored(column, amount):
    return case((column - amount < 0, 0), else_=column - amount)


class SqlStore:
    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def _storage(self, operation: str):
        try:
            yield
        except DBAPIError as exc:
            logger.error(
                "[store] storage failure",
                extra={"operation": operation, "error": type(exc.orig).__name__ if exc.orig else type(exc).__name__},
            )
            raise StorageUnavailable(f"{operation}: storage unavailable") from exc

    def _insert_ignore(self, conn, table, values: dict) -> None:
        """Insert a row unless its key already exists."""
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            conn.execute(pg_insert(table).values(**values).on_conflict_do_nothing())
        elif dialect == "sqlite":
            conn.execute(sqlite_insert(table).values(**values).on_conflict_do_nothing())
        else:
            nested = conn.begin_nested()
            try:
                conn.execute(insert(table).values(**values))
                nested.commit()
            except IntegrityError:
                nested.rollback()

    # ------------------------------------------------------------------ plans

    def get_plan(self, plan_key: str) -> Optional[PlanDefinition]:
        with self._storage("get_plan"), self._engine.connect() as conn:
            row = conn.execute(select(plans.c.definition).where(plans.c.plan_key == plan_key)).first()
        return PlanDefinition.model_validate(row.definition) if row else None

    def save_plan(self, plan: PlanDefinition) -> PlanDefinition:
        with self._storage("save_plan"), self._engine.begin() as conn:
            conn.execute(delete(plans).where(plans.c.plan_key == plan.plan_key))
            conn.execute(
                insert(plans).values(
                    plan_key=plan.plan_key,
                    category=plan.category.value,
                    is_custom=plan.is_custom,
                    tenant_id=plan.tenant_id,
                    version=plan.version,
                    definition=plan.model_dump(mode="json"),
                    updated_at=plan.updated_at,
                )
            )
        return plan

    def list_plans(self) -> List[PlanDefinition]:
        with self._storage("list_plans"), self._engine.connect() as conn:
            rows = conn.execute(select(plans.c.definition).order_by(plans.c.plan_key)).all()
        return [PlanDefinition.model_validate(r.definition) for r in rows]

    # ---------------------------------------------------------------- tenants

    def create_tenant(self, tenant: TenantRecord) -> TenantRecord:
        with self._storage("create_tenant"):
            try:
                with self._engine.begin() as conn:
                    conn.execute(
                        insert(tenants).values(
                            tenant_id=tenant.tenant_id,
                            category=tenant.category.value,
                            plan_key=tenant.plan_key,
                            created_at=tenant.created_at,
                        )
                    )
                    conn.execute(
                        insert(tenant_overlays).values(
                            tenant_id=tenant.tenant_id, custom_plan_key=None, updated_at=tenant.created_at
                        )
                    )
            except IntegrityError:
                raise ConflictError(f"tenant {tenant.tenant_id} already exists")
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[TenantRecord]:
        with self._storage("get_tenant"), self._engine.connect() as conn:
            row = conn.execute(select(tenants).where(tenants.c.tenant_id == tenant_id)).first()
        if row is None:
            return None
        return TenantRecord(
            tenant_id=row.tenant_id,
            category=row.category,
            plan_key=row.plan_key,
            created_at=_utc(row.created_at),
        )

    def set_tenant_plan(self, tenant_id: str, plan_key: str) -> TenantRecord:
        with self._storage("set_tenant_plan"), self._engine.begin() as conn:
            result = conn.execute(
                update(tenants).where(tenants.c.tenant_id == tenant_id).values(plan_key=plan_key)
            )
            if result.rowcount != 1:
                raise TenantNotFoundError(f"tenant {tenant_id} not found")
        return self.get_tenant(tenant_id)

    def _read_overlay(self, conn, tenant_id: str) -> Optional[TenantEntitlementOverlay]:
        row = conn.execute(select(tenant_overlays).where(tenant_overlays.c.tenant_id == tenant_id)).first()
        if row is None:
            return None
        slots = conn.execute(
            select(overlay_slots.c.resource_key, overlay_slots.c.extra_slots)
            .where(overlay_slots.c.tenant_id == tenant_id)
        ).all()
        return TenantEntitlementOverlay(
            tenant_id=tenant_id,
            extra_slots={s.resource_key: s.extra_slots for s in slots},
            custom_plan_key=row.custom_plan_key,
            updated_at=_utc(row.updated_at),
        )

    def get_overlay(self, tenant_id: str) -> Optional[TenantEntitlementOverlay]:
        with self._storage("get_overlay"), self._engine.connect() as conn:
            return self._read_overlay(conn, tenant_id)

    def _touch_overlay(self, conn, tenant_id: str, now: datetime, **values) -> None:
        result = conn.execute(
            update(tenant_overlays)
            .where(tenant_overlays.c.tenant_id == tenant_id)
            .values(updated_at=now, **values)
        )
        if result.rowcount != 1:
            raise TenantNotFoundError(f"tenant {tenant_id} not found")

    def add_extra_slots(self, tenant_id: str, resource_key: str, delta: int, now: datetime) -> TenantEntitlementOverlay:
        with self._storage("add_extra_slots"), self._engine.begin() as conn:
            self._touch_overlay(conn, tenant_id, now)
            self._insert_ignore(conn, overlay_slots, {
                "tenant_id": tenant_id, "resource_key": resource_key, "extra_slots": 0,
            })
            result = conn.execute(
                update(overlay_slots)
                .where(overlay_slots.c.tenant_id == tenant_id)
                .where(overlay_slots.c.resource_key == resource_key)
                .where(overlay_slots.c.extra_slots + delta >= 0)
                .values(extra_slots=overlay_slots.c.extra_slots + delta)
            )
            if result.rowcount != 1:
                raise ValidationError(f"extra_slots[{resource_key}] cannot be negative")
            return self._read_overlay(conn, tenant_id)

    def zero_extra_slots(self, tenant_id: str, resource_key: Optional[str], now: datetime) -> TenantEntitlementOverlay:
        with self._storage("zero_extra_slots"), self._engine.begin() as conn:
            self._touch_overlay(conn, tenant_id, now)
            stmt = update(overlay_slots).where(overlay_slots.c.tenant_id == tenant_id)
            if resource_key:
                stmt = stmt.where(overlay_slots.c.resource_key == resource_key)
            conn.execute(stmt.values(extra_slots=0))
            return self._read_overlay(conn, tenant_id)

    def set_custom_plan(self, tenant_id: str, plan_key: Optional[str], now: datetime) -> TenantEntitlementOverlay:
        with self._storage("set_custom_plan"), self._engine.begin() as conn:
            self._touch_overlay(conn, tenant_id, now, custom_plan_key=plan_key)
            return self._read_overlay(conn, tenant_id)

    # --------------------------------------------------------------- counters

    def _ensure_counter(self, tenant_id: str, resource_key: str, window: PeriodWindow) -> None:
        with self._engine.begin() as conn:
            exists = conn.execute(
                select(usage_counters.c.id).where(_counter_key(tenant_id, resource_key, window.period_id))
            ).first()
            if exists is None:
                self._insert_ignore(conn, usage_counters, {
                    "tenant_id": tenant_id,
                    "resource_key": resource_key,
                    "period_id": window.period_id,
                    "consumed": 0,
                    "period_start": window.start,
                    "period_end": window.end,
                    "frozen": False,
                })

    def _read_consumed(self, tenant_id: str, resource_key: str, period_id: str) -> int:
        with self._engine.connect() as conn:
            value = conn.execute(
                select(usage_counters.c.consumed).where(_counter_key(tenant_id, resource_key, period_id))
            ).scalar()
        return value or 0

    def _mutate_counter(self, conn, key, values, extra_condition=None) -> int:
        stmt = update(usage_counters).where(key).where(usage_counters.c.frozen.is_(False))
        if extra_condition is not None:
            stmt = stmt.where(extra_condition)
        return conn.execute(stmt.values(**values)).rowcount

    def consume_counter(self, tenant_id, resource_key, window, amount, limit, op_key, now) -> CounterMutation:
        key = _counter_key(tenant_id, resource_key, window.period_id)
        with self._storage("consume_counter"):
            self._ensure_counter(tenant_id, resource_key, window)
            try:
                with self._engine.begin() as conn:
                    if op_key:
                        conn.execute(insert(operation_keys).values(op_key=op_key, created_at=now))
                    applied = self._mutate_counter(
                        conn,
                        key,
                        {"consumed": usage_counters.c.consumed + amount, "last_mutation_at": now},
                        usage_counters.c.consumed + amount <= limit,
                    )
                    row = conn.execute(
                        select(usage_counters.c.consumed, usage_counters.c.frozen).where(key)
                    ).first()
                    if applied != 1:
                        if row is not None and row.frozen:
                            raise PeriodClosedError(f"period {window.period_id} is closed for {resource_key}")
                        raise _Rejected(consumed=row.consumed if row else 0)
                    return CounterMutation(applied=True, consumed=row.consumed, delta=amount)
            except IntegrityError:
                return CounterMutation(
                    applied=True,
                    consumed=self._read_consumed(tenant_id, resource_key, window.period_id),
                    replayed=True,
                )
            except _Rejected as rejected:
                return CounterMutation(applied=False, consumed=rejected.consumed)

    def release_counter(self, tenant_id, resource_key, window, amount, op_key, now) -> CounterMutation:
        key = _counter_key(tenant_id, resource_key, window.period_id)
        with self._storage("release_counter"):
            self._ensure_counter(tenant_id, resource_key, window)
            try:
                with self._engine.begin() as conn:
                    conn.execute(insert(operation_keys).values(op_key=op_key, created_at=now))
                    # row lock so the reported delta cannot straddle a concurrent consume
                    before = conn.execute(
                        select(usage_counters.c.consumed, usage_counters.c.frozen).where(key).with_for_update()
                    ).first()
                    applied = self._mutate_counter(
                        conn,
                        key,
                        {"consumed": _floored(usage_counters.c.consumed, amount), "last_mutation_at": now},
                    )
                    if applied != 1:
                        raise PeriodClosedError(f"period {window.period_id} is closed for {resource_key}")
                    consumed = conn.execute(select(usage_counters.c.consumed).where(key)).scalar_one()
                    return CounterMutation(applied=True, consumed=consumed, delta=before.consumed - consumed)
            except IntegrityError:
                return CounterMutation(
                    applied=True,
                    consumed=self._read_consumed(tenant_id, resource_key, window.period_id),
                    replayed=True,
                )

    def get_counter(self, tenant_id: str, resource_key: str, period_id: str) -> Optional[UsageCounter]:
        with self._storage("get_counter"), self._engine.connect() as conn:
            row = conn.execute(select(usage_counters).where(_counter_key(tenant_id, resource_key, period_id))).first()
        return _counter_from_row(row) if row else None

    def list_counters(self, tenant_id: Optional[str] = None, period_id: Optional[str] = None) -> List[UsageCounter]:
        stmt = select(usage_counters).order_by(usage_counters.c.id)
        if tenant_id is not None:
            stmt = stmt.where(usage_counters.c.tenant_id == tenant_id)
        if period_id is not None:
            stmt = stmt.where(usage_counters.c.period_id == period_id)
        with self._storage("list_counters"), self._engine.connect() as conn:
            return [_counter_from_row(r) for r in conn.execute(stmt).all()]

    # ---------------------------------------------------------------- budgets

    def _ensure_budget(self, tenant_id: str, provider: str, window: PeriodWindow, cap_tokens: int, cap_cost: float) -> None:
        with self._engine.begin() as conn:
            exists = conn.execute(
                select(budget_states.c.id).where(_budget_key(tenant_id, provider, window.period_id))
            ).first()
            if exists is None:
                self._insert_ignore(conn, budget_states, {
                    "tenant_id": tenant_id,
                    "provider": provider,
                    "period_id": window.period_id,
                    "consumed_tokens": 0,
                    "consumed_cost": 0.0,
                    "reserved_tokens": 0,
                    "reserved_cost": 0.0,
                    "cap_tokens": cap_tokens,
                    "cap_cost": cap_cost,
                    "period_start": window.start,
                    "period_end": window.end,
                    "frozen": False,
                })

    def _hold(self, conn, reservation: Reservation, provider: str, cap_tokens: int, cap_cost: float, reason: str) -> Optional[int]:
        c = budget_states.c
        key = _budget_key(reservation.tenant_id, provider, reservation.period_id)
        stmt = update(budget_states).where(key).where(c.frozen.is_(False))
        if cap_tokens != UNLIMITED:
            stmt = stmt.where(c.consumed_tokens + c.reserved_tokens + reservation.tokens <= cap_tokens)
        if cap_cost >= 0:
            stmt = stmt.where(c.consumed_cost + c.reserved_cost + reservation.estimated_cost <= cap_cost)
        result = conn.execute(stmt.values(
            reserved_tokens=c.reserved_tokens + reservation.tokens,
            reserved_cost=c.reserved_cost + reservation.estimated_cost,
            cap_tokens=cap_tokens,
            cap_cost=cap_cost,
        ))
        row = conn.execute(select(budget_states).where(key)).first()
        state = _budget_from_row(row)
        if result.rowcount != 1:
            if state.frozen:
                raise PeriodClosedError(f"period {reservation.period_id} is closed for {provider}")
            if cap_tokens == UNLIMITED:
                headroom = 0
            else:
                headroom = max(0, cap_tokens - state.consumed_tokens - state.reserved_tokens)
            raise _Rejected(reason=reason, remaining=headroom)
        return state.remaining_tokens

    def reserve_budget(self, reservation: Reservation, caps: BudgetCaps, window: PeriodWindow) -> ReserveOutcome:
        with self._storage("reserve_budget"):
            self._ensure_budget(reservation.tenant_id, reservation.provider, window, caps.provider_tokens, caps.provider_cost)
            self._ensure_budget(reservation.tenant_id, GLOBAL_PROVIDER, window, caps.global_tokens, caps.global_cost)
            try:
                with self._engine.begin() as conn:
                    provider_left = self._hold(
                        conn, reservation, reservation.provider,
                        caps.provider_tokens, caps.provider_cost, BudgetDenial.PROVIDER_CAP,
                    )
                    global_left = self._hold(
                        conn, reservation, GLOBAL_PROVIDER,
                        caps.global_tokens, caps.global_cost, BudgetDenial.GLOBAL_CAP,
                    )
                    conn.execute(insert(budget_reservations).values(
                        reservation_id=reservation.reservation_id,
                        tenant_id=reservation.tenant_id,
                        provider=reservation.provider,
                        period_id=reservation.period_id,
                        tokens=reservation.tokens,
                        estimated_cost=reservation.estimated_cost,
                        status=reservation.status.value,
                        created_at=reservation.created_at,
                        expires_at=reservation.expires_at,
                    ))
            except _Rejected as rejected:
                return ReserveOutcome(granted=False, reason=rejected.reason, remaining_tokens=rejected.remaining)
        remaining = [v for v in (provider_left, global_left) if v is not None]
        return ReserveOutcome(granted=True, remaining_tokens=min(remaining) if remaining else None)

    def _release_hold(self, conn, reservation: Reservation) -> None:
        c = budget_states.c
        for provider in (reservation.provider, GLOBAL_PROVIDER):
            conn.execute(
                update(budget_states)
                .where(_budget_key(reservation.tenant_id, provider, reservation.period_id))
                .where(c.frozen.is_(False))
                .values(
                    reserved_tokens=_floored(c.reserved_tokens, reservation.tokens),
                    reserved_cost=_floored(c.reserved_cost, reservation.estimated_cost),
                )
            )

    def _book_actual(self, conn, reservation: Reservation, tokens: int, cost: float) -> None:
        c = budget_states.c
        for provider in (reservation.provider, GLOBAL_PROVIDER):
            conn.execute(
                update(budget_states)
                .where(_budget_key(reservation.tenant_id, provider, reservation.period_id))
                .values(consumed_tokens=c.consumed_tokens + tokens, consumed_cost=c.consumed_cost + cost)
            )

    def _transition(self, conn, reservation_id: str, status: ReservationStatus, now: datetime, **values) -> bool:
        result = conn.execute(
            update(budget_reservations)
            .where(budget_reservations.c.reservation_id == reservation_id)
            .where(budget_reservations.c.status == ReservationStatus.PENDING.value)
            .values(status=status.value, settled_at=now, **values)
        )
        return result.rowcount == 1

    def settle_reservation(self, reservation_id, status, actual_tokens, actual_cost, now) -> SettleOutcome:
        with self._storage("settle_reservation"), self._engine.begin() as conn:
            row = conn.execute(
                select(budget_reservations)
                .where(budget_reservations.c.reservation_id == reservation_id)
                .with_for_update()
            ).first()
            if row is None:
                return SettleOutcome(ok=False, status=None, error=SettlementError.NOT_FOUND)
            reservation = _reservation_from_row(row)

            if reservation.status == ReservationStatus.PENDING and reservation.expires_at <= now:
                if self._transition(conn, reservation_id, ReservationStatus.EXPIRED, now):
                    self._release_hold(conn, reservation)
                return SettleOutcome(ok=False, status=ReservationStatus.EXPIRED, error=SettlementError.EXPIRED)

            confirmed = status == ReservationStatus.CONFIRMED
            values = {"actual_tokens": actual_tokens, "actual_cost": actual_cost} if confirmed else {}
            if not self._transition(conn, reservation_id, status, now, **values):
                current = ReservationStatus(conn.execute(
                    select(budget_reservations.c.status).where(budget_reservations.c.reservation_id == reservation_id)
                ).scalar_one())
                error = SettlementError.EXPIRED if current == ReservationStatus.EXPIRED else SettlementError.ALREADY_SETTLED
                return SettleOutcome(ok=False, status=current, error=error)

            self._release_hold(conn, reservation)
            if confirmed:
                self._book_actual(conn, reservation, actual_tokens, actual_cost)
                return SettleOutcome(
                    ok=True,
                    status=status,
                    refunded_tokens=max(0, reservation.tokens - actual_tokens),
                    overrun_tokens=max(0, actual_tokens - reservation.tokens),
                )
            return SettleOutcome(ok=True, status=status, refunded_tokens=reservation.tokens)

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._storage("get_reservation"), self._engine.connect() as conn:
            row = conn.execute(
                select(budget_reservations).where(budget_reservations.c.reservation_id == reservation_id)
            ).first()
        return _reservation_from_row(row) if row else None

    def get_budget(self, tenant_id: str, provider: str, period_id: str) -> Optional[BudgetState]:
        with self._storage("get_budget"), self._engine.connect() as conn:
            row = conn.execute(select(budget_states).where(_budget_key(tenant_id, provider, period_id))).first()
        return _budget_from_row(row) if row else None

    def list_budgets(self, tenant_id: Optional[str] = None, period_id: Optional[str] = None) -> List[BudgetState]:
        stmt = select(budget_states).order_by(budget_states.c.id)
        if tenant_id is not None:
            stmt = stmt.where(budget_states.c.tenant_id == tenant_id)
        if period_id is not None:
            stmt = stmt.where(budget_states.c.period_id == period_id)
        with self._storage("list_budgets"), self._engine.connect() as conn:
            return [_budget_from_row(r) for r in conn.execute(stmt).all()]

    def _expire_pending(self, conn, rows, now: datetime) -> int:
        expired = 0
        for row in rows:
            reservation = _reservation_from_row(row)
            if self._transition(conn, reservation.reservation_id, ReservationStatus.EXPIRED, now):
                self._release_hold(conn, reservation)
                expired += 1
        return expired

    def expire_reservations(self, now: datetime) -> int:
        with self._storage("expire_reservations"), self._engine.begin() as conn:
            rows = conn.execute(
                select(budget_reservations)
                .where(budget_reservations.c.status == ReservationStatus.PENDING.value)
                .where(budget_reservations.c.expires_at <= now)
            ).all()
            return self._expire_pending(conn, rows, now)

    # ----------------------------------------------------------- rate windows

    def incr_window(self, tenant_id: str, endpoint_class: str, window_start: int) -> int:
        key = and_(
            rate_windows.c.tenant_id == tenant_id,
            rate_windows.c.endpoint_class == endpoint_class,
            rate_windows.c.window_start == window_start,
        )
        with self._storage("incr_window"), self._engine.begin() as conn:
            self._insert_ignore(conn, rate_windows, {
                "tenant_id": tenant_id, "endpoint_class": endpoint_class,
                "window_start": window_start, "count": 0,
            })
            conn.execute(update(rate_windows).where(key).values(count=rate_windows.c.count + 1))
            return conn.execute(select(rate_windows.c.count).where(key)).scalar_one()

    def purge_windows(self, older_than: int) -> int:
        with self._storage("purge_windows"), self._engine.begin() as conn:
            result = conn.execute(delete(rate_windows).where(rate_windows.c.window_start < older_than))
            return result.rowcount or 0

    # ------------------------------------------------------ rollover & audit

    def due_periods(self, now: datetime) -> List[str]:
        periods = set()
        with self._storage("due_periods"), self._engine.connect() as conn:
            for table in (usage_counters, budget_states):
                rows = conn.execute(
                    select(table.c.period_id)
                    .where(table.c.frozen.is_(False))
                    .where(table.c.period_end <= now)
                    .distinct()
                ).all()
                periods.update(r.period_id for r in rows)
        return sorted(periods)

    def _freeze_counters(self, conn, window: PeriodWindow, successor: PeriodWindow, now: datetime, outcome: RolloverOutcome) -> None:
        c = usage_counters.c
        candidates = conn.execute(
            select(c.id).where(c.period_id == window.period_id).where(c.frozen.is_(False)).where(c.period_end <= now)
        ).all()
        for candidate in candidates:
            frozen = conn.execute(
                update(usage_counters).where(c.id == candidate.id).where(c.frozen.is_(False)).values(frozen=True)
            )
            if frozen.rowcount != 1:
                continue
            row = conn.execute(select(usage_counters).where(c.id == candidate.id)).first()
            outcome.audit_records.append(AuditRecord(
                action=AuditAction.COUNTER_FROZEN,
                tenant_id=row.tenant_id,
                subject=row.resource_key,
                period_id=row.period_id,
                payload={"consumed": row.consumed},
                created_at=now,
            ))
            self._insert_ignore(conn, usage_counters, {
                "tenant_id": row.tenant_id,
                "resource_key": row.resource_key,
                "period_id": successor.period_id,
                "consumed": 0,
                "period_start": successor.start,
                "period_end": successor.end,
                "frozen": False,
            })
            outcome.counters_frozen += 1

    def _freeze_budgets(self, conn, window: PeriodWindow, successor: PeriodWindow, now: datetime, outcome: RolloverOutcome) -> None:
        c = budget_states.c
        candidates = conn.execute(
            select(c.id).where(c.period_id == window.period_id).where(c.frozen.is_(False)).where(c.period_end <= now)
        ).all()
        for candidate in candidates:
            frozen = conn.execute(
                update(budget_states).where(c.id == candidate.id).where(c.frozen.is_(False)).values(frozen=True)
            )
            if frozen.rowcount != 1:
                continue
            row = conn.execute(select(budget_states).where(c.id == candidate.id)).first()
            outcome.audit_records.append(AuditRecord(
                action=AuditAction.BUDGET_FROZEN,
                tenant_id=row.tenant_id,
                subject=row.provider,
                period_id=row.period_id,
                payload={"consumed_tokens": row.consumed_tokens, "consumed_cost": row.consumed_cost},
                created_at=now,
            ))
            self._insert_ignore(conn, budget_states, {
                "tenant_id": row.tenant_id,
                "provider": row.provider,
                "period_id": successor.period_id,
                "consumed_tokens": 0,
                "consumed_cost": 0.0,
                "reserved_tokens": 0,
                "reserved_cost": 0.0,
                "cap_tokens": row.cap_tokens,
                "cap_cost": row.cap_cost,
                "period_start": successor.start,
                "period_end": successor.end,
                "frozen": False,
            })
            outcome.budgets_frozen += 1

    def _carry_hold(self, conn, reservation: Reservation, successor: PeriodWindow) -> bool:
        """Move a live hold from the closed period onto the successor's rows."""
        r = budget_reservations.c
        moved = conn.execute(
            update(budget_reservations)
            .where(r.reservation_id == reservation.reservation_id)
            .where(r.status == ReservationStatus.PENDING.value)
            .where(r.period_id == reservation.period_id)
            .values(period_id=successor.period_id)
        )
        if moved.rowcount != 1:
            return False
        c = budget_states.c
        for provider in (reservation.provider, GLOBAL_PROVIDER):
            conn.execute(
                update(budget_states)
                .where(_budget_key(reservation.tenant_id, provider, reservation.period_id))
                .values(
                    reserved_tokens=_floored(c.reserved_tokens, reservation.tokens),
                    reserved_cost=_floored(c.reserved_cost, reservation.estimated_cost),
                )
            )
            conn.execute(
                update(budget_states)
                .where(_budget_key(reservation.tenant_id, provider, successor.period_id))
                .values(
                    reserved_tokens=c.reserved_tokens + reservation.tokens,
                    reserved_cost=c.reserved_cost + reservation.estimated_cost,
                )
            )
        return True

    def rollover_period(self, window: PeriodWindow, successor: PeriodWindow, now: datetime) -> RolloverOutcome:
        outcome = RolloverOutcome(period_id=window.period_id)
        with self._storage("rollover_period"), self._engine.begin() as conn:
            pending = conn.execute(
                select(budget_reservations)
                .where(budget_reservations.c.period_id == window.period_id)
                .where(budget_reservations.c.status == ReservationStatus.PENDING.value)
            ).all()
            lapsed = [row for row in pending if _utc(row.expires_at) <= now]
            live = [_reservation_from_row(row) for row in pending if _utc(row.expires_at) > now]
            outcome.reservations_expired = self._expire_pending(conn, lapsed, now)
            self._freeze_counters(conn, window, successor, now, outcome)
            self._freeze_budgets(conn, window, successor, now, outcome)
            # successor rows exist now; live holds follow their reservation there
            outcome.reservations_carried = sum(
                1 for reservation in live if self._carry_hold(conn, reservation, successor)
            )
            for record in outcome.audit_records:
                self._insert_audit(conn, record)
        return outcome

    def _insert_audit(self, conn, record: AuditRecord) -> None:
        conn.execute(insert(audit_records).values(
            action=record.action,
            tenant_id=record.tenant_id,
            subject=record.subject,
            period_id=record.period_id,
            payload=record.payload,
            actor=record.actor,
            created_at=record.created_at,
        ))

    def append_audit(self, record: AuditRecord) -> None:
        with self._storage("append_audit"), self._engine.begin() as conn:
            self._insert_audit(conn, record)

    def list_audit(self, tenant_id: Optional[str] = None, action: Optional[str] = None) -> List[AuditRecord]:
        stmt = select(audit_records).order_by(audit_records.c.id)
        if tenant_id is not None:
            stmt = stmt.where(audit_records.c.tenant_id == tenant_id)
        if action is not None:
            stmt = stmt.where(audit_records.c.action == action)
        with self._storage("list_audit"), self._engine.connect() as conn:
            return [_audit_from_row(r) for r in conn.execute(stmt).all()]
