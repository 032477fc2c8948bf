"""
Tenant health and service liveness endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from entitlement_engine.api.deps import get_engine
from entitlement_engine.engine import GovernanceEngine
from entitlement_engine.models.health import ChurnSignals, EngagementMetrics

router = APIRouter(prefix="/v1/tenants/{tenant_id}", tags=["health"])
root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/health")
def tenant_health(
    tenant_id: str,
    active_user_ratio: float = Query(0.0, ge=0, le=1),
    feature_adoption: float = Query(0.0, ge=0, le=1),
    days_since_last_login: Optional[int] = Query(None, ge=0),
    support_tickets_opened: int = Query(0, ge=0),
    support_tickets_resolved: int = Query(0, ge=0),
    days_payment_overdue: int = Query(0, ge=0),
    previous_score: Optional[int] = Query(None, ge=0, le=100),
    engine: GovernanceEngine = Depends(get_engine),
):
    """Advisory health snapshot. Engagement and churn signals come from the caller."""
    snapshot = engine.health.assess(
        tenant_id,
        engagement=EngagementMetrics(
            active_user_ratio=active_user_ratio,
            feature_adoption=feature_adoption,
            days_since_last_login=days_since_last_login,
        ),
        churn=ChurnSignals(
            support_tickets_opened=support_tickets_opened,
            support_tickets_resolved=support_tickets_resolved,
            days_payment_overdue=days_payment_overdue,
        ),
        previous_score=previous_score,
    )
    return snapshot.model_dump(mode="json")
