"""
entitlement_engine/models/entitlement.py

Derived entitlement values. Never persisted; recomputed on every query.
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict

from entitlement_engine.models.resources import UNLIMITED, Cadence


class EntitlementSource(str, Enum):
    CUSTOM = "custom"
    BASE = "base"


class EffectiveEntitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    resource_key: str
    limit: int
    source: EntitlementSource
    plan_key: str
    extra_slots: int = 0
    cadence: Cadence

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


class AiBudgetCaps(BaseModel):
    """Provider cap plus the tenant's cross-provider cap. -1 means unlimited."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    provider: str
    provider_tokens: int
    provider_cost: float
    global_tokens: int
    plan_key: str
    source: EntitlementSource
