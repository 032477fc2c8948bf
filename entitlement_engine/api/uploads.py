"""
Upload admission API: size/type checks plus storage and monthly upload quotas.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from entitlement_engine.api.deps import get_engine
from entitlement_engine.engine import GovernanceEngine

router = APIRouter(prefix="/v1/tenants/{tenant_id}/uploads", tags=["uploads"])


class UploadCheckRequest(BaseModel):
    size_bytes: int = Field(..., gt=0)
    file_type: str = Field(..., min_length=1)
    idempotency_key: Optional[str] = None


class UploadDeleteRequest(BaseModel):
    size_bytes: int = Field(..., gt=0)
    operation_id: str = Field(..., min_length=1)


@router.post("/check")
def check_upload(tenant_id: str, req: UploadCheckRequest, engine: GovernanceEngine = Depends(get_engine)):
    decision = engine.uploads.check_upload(tenant_id, req.size_bytes, req.file_type, req.idempotency_key)
    return {**decision.model_dump(mode="json"), "code": decision.reason}


@router.post("/delete")
def record_delete(tenant_id: str, req: UploadDeleteRequest, engine: GovernanceEngine = Depends(get_engine)):
    return engine.uploads.record_delete(tenant_id, req.size_bytes, req.operation_id).model_dump(mode="json")
