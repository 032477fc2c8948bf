"""
Entitlement and usage API.

Read effective limits and feature flags; consume and release counted
resources. Denials are 200 responses with granted=false and a code.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from entitlement_engine.api.deps import get_engine
from entitlement_engine.core.logging import get_request_id
from entitlement_engine.engine import GovernanceEngine

router = APIRouter(prefix="/v1/tenants/{tenant_id}", tags=["entitlements"])


# ============================================================================
# Pydantic Models
# ============================================================================

class ConsumeRequest(BaseModel):
    amount: int = Field(default=1, gt=0)
    idempotency_key: Optional[str] = Field(None, description="Replays with the same key are not counted twice")


class ReleaseRequest(BaseModel):
    amount: int = Field(..., gt=0)
    operation_id: str = Field(..., min_length=1, description="Release is applied at most once per operation id")


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/entitlements/{resource_key}")
def get_entitlement(tenant_id: str, resource_key: str, engine: GovernanceEngine = Depends(get_engine)):
    """Effective limit with the current period's consumption alongside it."""
    entitlement = engine.resolver.resolve(tenant_id, resource_key)
    usage = engine.ledger.snapshot(tenant_id, resource_key)
    return {
        **entitlement.model_dump(mode="json"),
        **usage.model_dump(mode="json"),
        "unlimited": entitlement.unlimited,
    }


@router.get("/features/{feature}")
def get_feature(tenant_id: str, feature: str, engine: GovernanceEngine = Depends(get_engine)):
    enabled = engine.resolver.resolve_feature(tenant_id, feature)
    return {"tenant_id": tenant_id, "feature": feature, "enabled": enabled}


@router.get("/usage/{resource_key}")
def get_usage(tenant_id: str, resource_key: str, engine: GovernanceEngine = Depends(get_engine)):
    return engine.ledger.snapshot(tenant_id, resource_key).model_dump(mode="json")


@router.post("/usage/{resource_key}/consume")
def consume(
    tenant_id: str,
    resource_key: str,
    req: ConsumeRequest,
    engine: GovernanceEngine = Depends(get_engine),
):
    result = engine.ledger.try_consume(
        tenant_id, resource_key, req.amount, idempotency_key=req.idempotency_key
    )
    return {**result.model_dump(mode="json"), "code": result.reason, "request_id": get_request_id()}


@router.post("/usage/{resource_key}/release")
def release(
    tenant_id: str,
    resource_key: str,
    req: ReleaseRequest,
    engine: GovernanceEngine = Depends(get_engine),
):
    result = engine.ledger.release(tenant_id, resource_key, req.amount, req.operation_id)
    return result.model_dump(mode="json")
