"""
entitlement_engine/models/budget.py

Metered AI budgets: per-provider state rows, reservations, and settlement outcomes.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from entitlement_engine.core.errors import BudgetExceeded, ReservationExpired, StorageUnavailable
from entitlement_engine.models.resources import UNLIMITED


class BudgetState(BaseModel):
    """One row per (tenant, provider, period). provider '*' holds the global cap."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    provider: str
    period_id: str
    consumed_tokens: int = 0
    consumed_cost: float = 0.0
    reserved_tokens: int = 0
    reserved_cost: float = 0.0
    cap_tokens: int = UNLIMITED
    cap_cost: float = -1.0
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    frozen: bool = False

    @property
    def remaining_tokens(self) -> Optional[int]:
        if self.cap_tokens == UNLIMITED:
            return None
        return max(0, self.cap_tokens - self.consumed_tokens - self.reserved_tokens)


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Reservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    reservation_id: str
    tenant_id: str
    provider: str
    period_id: str
    tokens: int
    estimated_cost: float = 0.0
    status: ReservationStatus = ReservationStatus.PENDING
    created_at: datetime
    expires_at: datetime
    settled_at: Optional[datetime] = None
    actual_tokens: Optional[int] = None
    actual_cost: Optional[float] = None


class BudgetDenial:
    PROVIDER_CAP = "provider_cap"
    GLOBAL_CAP = "global_cap"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class ReserveResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    granted: bool
    tenant_id: str
    provider: str
    tokens: int
    reservation_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    period_id: Optional[str] = None
    # provider_cap | global_cap | storage_unavailable
    reason: Optional[str] = None
    remaining_tokens: Optional[int] = None

    @property
    def code(self) -> Optional[str]:
        if self.granted:
            return None
        if self.reason == BudgetDenial.STORAGE_UNAVAILABLE:
            return StorageUnavailable.code
        return BudgetExceeded.code

    def raise_if_denied(self) -> "ReserveResult":
        if self.granted:
            return self
        if self.reason == BudgetDenial.STORAGE_UNAVAILABLE:
            raise StorageUnavailable(f"budget storage unavailable for {self.provider}")
        raise BudgetExceeded(f"{self.provider} budget exhausted ({self.reason})")


class SettlementError:
    NOT_FOUND = "reservation_not_found"
    ALREADY_SETTLED = "reservation_already_settled"
    EXPIRED = ReservationExpired.code


class SettlementResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    reservation_id: str
    status: Optional[ReservationStatus] = None
    error: Optional[str] = None
    refunded_tokens: int = 0
    overrun_tokens: int = 0
    # storage was unreachable; the hold is left for the expiry sweep
    deferred: bool = False
