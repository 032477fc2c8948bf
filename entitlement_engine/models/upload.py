"""
entitlement_engine/models/upload.py

Upload admission decisions.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class UploadDenial:
    FILE_TOO_LARGE = "file_too_large"
    FILE_TYPE_NOT_ALLOWED = "file_type_not_allowed"
    # plus the ledger reasons: limit_exceeded, storage_unavailable


class UploadDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    granted: bool
    tenant_id: str
    size_bytes: int
    file_type: str
    reason: Optional[str] = None
    # quota that denied the upload (upload_bytes or storage_bytes)
    resource_key: Optional[str] = None
    storage_remaining: Optional[int] = None
    upload_quota_remaining: Optional[int] = None
    replayed: bool = False
