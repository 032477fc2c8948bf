"""
entitlement_engine/models/audit.py

Append-only audit record for rollovers and administrative overrides.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class AuditAction:
    COUNTER_FROZEN = "counter.frozen"
    BUDGET_FROZEN = "budget.frozen"
    PLAN_UPSERTED = "plan.upserted"
    TENANT_CREATED = "tenant.created"
    SLOTS_GRANTED = "overlay.slots_granted"
    SLOTS_ZEROED = "overlay.slots_zeroed"
    CUSTOM_PLAN_ASSIGNED = "overlay.custom_plan_assigned"
    CUSTOM_PLAN_CLEARED = "overlay.custom_plan_cleared"
    BASE_PLAN_CHANGED = "tenant.base_plan_changed"


class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    tenant_id: Optional[str] = None
    # resource key, provider, or plan key the record is about
    subject: Optional[str] = None
    period_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None
    created_at: datetime
