"""
Rate check API.

Every call counts against the tenant's current window. A limited call is
still a 200 with allowed=false, code=rate_limited and a Retry-After header.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Response

from entitlement_engine.api.deps import get_engine
from entitlement_engine.core.errors import RateLimited
from entitlement_engine.engine import GovernanceEngine

router = APIRouter(prefix="/v1/tenants/{tenant_id}", tags=["ratelimit"])


@router.get("/rate/{endpoint_class}")
def rate_check(
    tenant_id: str,
    endpoint_class: str,
    response: Response,
    engine: GovernanceEngine = Depends(get_engine),
):
    decision = engine.rate_limiter.check(tenant_id, endpoint_class)
    if not decision.allowed:
        response.headers["Retry-After"] = str(decision.retry_after)
    return {**asdict(decision), "code": None if decision.allowed else RateLimited.code}
