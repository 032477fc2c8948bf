"""
AI budget API: reserve before the call, confirm or cancel after.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from entitlement_engine.api.deps import get_engine
from entitlement_engine.core.errors import NotFoundError
from entitlement_engine.engine import GovernanceEngine

router = APIRouter(tags=["budgets"])


# ============================================================================
# Pydantic Models
# ============================================================================

class ReserveRequest(BaseModel):
    estimated_tokens: int = Field(..., gt=0)
    estimated_cost: float = Field(default=0.0, ge=0)


class ConfirmRequest(BaseModel):
    actual_tokens: int = Field(..., ge=0)
    actual_cost: float = Field(default=0.0, ge=0)


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/v1/tenants/{tenant_id}/budgets/{provider}/reservations")
def reserve_budget(
    tenant_id: str,
    provider: str,
    req: ReserveRequest,
    engine: GovernanceEngine = Depends(get_engine),
):
    result = engine.budgets.reserve(tenant_id, provider, req.estimated_tokens, req.estimated_cost)
    return {**result.model_dump(mode="json"), "code": result.code}


@router.get("/v1/tenants/{tenant_id}/budgets/{provider}")
def get_budget(tenant_id: str, provider: str, engine: GovernanceEngine = Depends(get_engine)):
    state = engine.budgets.get_budget(tenant_id, provider)
    return {**state.model_dump(mode="json"), "remaining_tokens": state.remaining_tokens}


@router.get("/v1/budgets/reservations/{reservation_id}")
def get_reservation(reservation_id: str, engine: GovernanceEngine = Depends(get_engine)):
    reservation = engine.budgets.get_reservation(reservation_id)
    if reservation is None:
        raise NotFoundError(f"reservation {reservation_id} not found")
    return reservation.model_dump(mode="json")


@router.post("/v1/budgets/reservations/{reservation_id}/confirm")
def confirm_reservation(
    reservation_id: str,
    req: ConfirmRequest,
    engine: GovernanceEngine = Depends(get_engine),
):
    result = engine.budgets.confirm(reservation_id, req.actual_tokens, req.actual_cost)
    return {**result.model_dump(mode="json"), "code": result.error}


@router.post("/v1/budgets/reservations/{reservation_id}/cancel")
def cancel_reservation(reservation_id: str, engine: GovernanceEngine = Depends(get_engine)):
    result = engine.budgets.cancel(reservation_id)
    return {**result.model_dump(mode="json"), "code": result.error}
