"""
Admin operations router: plan catalog, tenants, overlays, rollover, audit.

Authorization for these routes is enforced in front of the engine. The
X-Actor header, when present, is recorded on the audit rows.
"""

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from entitlement_engine.api.deps import get_actor, get_engine
from entitlement_engine.engine import GovernanceEngine

logger = logging.getLogger("entitlements.admin")

router = APIRouter(prefix="/v1/admin", tags=["admin"])


# ============================================================================
# Pydantic Models
# ============================================================================

class CreateTenantRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    category: str = Field(..., description="individual | business")
    plan_key: str = Field(..., min_length=1)


class OverlayUpdateRequest(BaseModel):
    """Overlay commands, applied in order zero, grant, custom plan, base plan; all checked before any applies."""
    zero_slots: Optional[List[str]] = Field(None, description="Resource keys whose extra slots are zeroed")
    zero_all_slots: bool = False
    grant_slots: Dict[str, int] = Field(default_factory=dict, description="Extra slots added per resource key")
    custom_plan: Optional[Dict[str, Any]] = Field(None, description="Custom plan definition; omitted fields inherit")
    clear_custom_plan: bool = False
    base_plan_key: Optional[str] = None


# ============================================================================
# Plans
# ============================================================================

@router.get("/plans")
def list_plans(include_custom: bool = Query(False), engine: GovernanceEngine = Depends(get_engine)):
    return {"plans": [p.model_dump(mode="json") for p in engine.plans.list_plans(include_custom=include_custom)]}


@router.put("/plans/{plan_key}")
def put_plan(
    plan_key: str,
    definition: Dict[str, Any],
    engine: GovernanceEngine = Depends(get_engine),
    actor: Optional[str] = Depends(get_actor),
):
    plan = engine.plans.upsert_plan({**definition, "plan_key": plan_key}, actor=actor)
    return plan.model_dump(mode="json")


# ============================================================================
# Tenants & overlays
# ============================================================================

@router.post("/tenants", status_code=201)
def create_tenant(
    req: CreateTenantRequest,
    engine: GovernanceEngine = Depends(get_engine),
    actor: Optional[str] = Depends(get_actor),
):
    tenant = engine.tenants.create_tenant(req.tenant_id, req.category, req.plan_key, actor=actor)
    return tenant.model_dump(mode="json")


@router.get("/tenants/{tenant_id}")
def get_tenant(tenant_id: str, engine: GovernanceEngine = Depends(get_engine)):
    return {
        "tenant": engine.tenants.get_tenant(tenant_id).model_dump(mode="json"),
        "overlay": engine.tenants.get_overlay(tenant_id).model_dump(mode="json"),
    }


@router.put("/tenants/{tenant_id}/overlay")
def put_overlay(
    tenant_id: str,
    req: OverlayUpdateRequest,
    engine: GovernanceEngine = Depends(get_engine),
    actor: Optional[str] = Depends(get_actor),
):
    overlay = engine.tenants.update_overlay(
        tenant_id,
        zero_all_slots=req.zero_all_slots,
        zero_slots=req.zero_slots or [],
        grant_slots=req.grant_slots,
        custom_plan=req.custom_plan,
        clear_custom_plan=req.clear_custom_plan,
        base_plan_key=req.base_plan_key,
        actor=actor,
    )
    return {
        "tenant": engine.tenants.get_tenant(tenant_id).model_dump(mode="json"),
        "overlay": overlay.model_dump(mode="json"),
    }


# ============================================================================
# Periods & audit
# ============================================================================

@router.post("/periods/{period_id}/rollover")
def rollover_period(period_id: str, engine: GovernanceEngine = Depends(get_engine)):
    report = engine.scheduler.rollover(period_id)
    logger.info("[admin] rollover requested", extra={"period_id": period_id, "skipped": report.skipped})
    return asdict(report)


@router.get("/audit")
def list_audit(
    tenant_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    engine: GovernanceEngine = Depends(get_engine),
):
    records = engine.store.list_audit(tenant_id=tenant_id, action=action)
    return {"total": len(records), "records": [r.model_dump(mode="json") for r in records]}
