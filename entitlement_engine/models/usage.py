"""
entitlement_engine/models/usage.py

Usage counters and the outcomes of consume/release.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from entitlement_engine.core.errors import LimitExceeded, StorageUnavailable


class UsageCounter(BaseModel):
    """One row per (tenant, resource, period). Frozen rows are read-only history."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    resource_key: str
    period_id: str
    consumed: int = 0
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    last_mutation_at: Optional[datetime] = None
    frozen: bool = False


class DenialReason:
    LIMIT_EXCEEDED = "limit_exceeded"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class ConsumeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    granted: bool
    tenant_id: str
    resource_key: str
    amount: int
    limit: int
    consumed: Optional[int] = None
    remaining: Optional[int] = None
    unlimited: bool = False
    period_id: Optional[str] = None
    reason: Optional[str] = None
    replayed: bool = False

    def raise_if_denied(self) -> "ConsumeResult":
        """Opt-in exception style for callers that prefer raising over branching."""
        if self.granted:
            return self
        if self.reason == DenialReason.STORAGE_UNAVAILABLE:
            raise StorageUnavailable(f"usage storage unavailable for {self.resource_key}")
        raise LimitExceeded(
            f"{self.resource_key} limit {self.limit} reached ({self.consumed} used)"
        )


class ReleaseResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    resource_key: str
    amount: int
    released: int = 0
    consumed: Optional[int] = None
    period_id: Optional[str] = None
    replayed: bool = False
    # storage was unreachable; the release is reported as accepted
    deferred: bool = False


class UsageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    resource_key: str
    limit: int
    consumed: int
    remaining: Optional[int]
    unlimited: bool
    period_id: str
    degraded: bool = False
