"""
entitlement_engine/models/tenant.py

Tenant record and its entitlement overlay.
"""

from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from entitlement_engine.models.resources import TenantCategory


class TenantRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    category: TenantCategory
    plan_key: str
    created_at: datetime


class TenantEntitlementOverlay(BaseModel):
    """
    Per-tenant additive adjustments.

    Created empty with the tenant and never deleted: slots are zeroed and the
    custom plan reference cleared instead, so the audit trail stays intact.
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    extra_slots: Dict[str, int] = Field(default_factory=dict)
    custom_plan_key: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("extra_slots")
    @classmethod
    def _non_negative(cls, v: Dict[str, int]) -> Dict[str, int]:
        for key, value in v.items():
            if value < 0:
                raise ValueError(f"extra_slots[{key}] cannot be negative")
        return v

    def slots_for(self, resource_key: str) -> int:
        return self.extra_slots.get(resource_key, 0)
