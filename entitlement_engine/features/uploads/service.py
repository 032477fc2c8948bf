"""
entitlement_engine/features/uploads/service.py

Upload guard: file size/type checks plus the storage and monthly upload
quotas, both charged through the usage ledger.

The monthly quota is charged first. If the storage charge is then denied the
quota charge is released again, so a refused upload leaves no partial charge.
"""

import logging
from typing import Optional
from uuid import uuid4

from entitlement_engine.core.errors import ValidationError
from entitlement_engine.features.entitlements.service import EntitlementResolver
from entitlement_engine.features.usage.service import UsageLedger
from entitlement_engine.models.resources import STORAGE_RESOURCE, UNLIMITED, UPLOAD_RESOURCE
from entitlement_engine.models.upload import UploadDecision, UploadDenial
from entitlement_engine.models.usage import ReleaseResult


logger = logging.getLogger("entitlements.uploads")


class UploadGuard:
    def __init__(self, resolver: EntitlementResolver, ledger: UsageLedger):
        self.resolver = resolver
        self.ledger = ledger

    def check_upload(
        self,
        tenant_id: str,
        size_bytes: int,
        file_type: str,
        idempotency_key: Optional[str] = None,
        *,
        now=None,
    ) -> UploadDecision:
        if size_bytes <= 0:
            raise ValidationError("size_bytes must be a positive integer")
        if not file_type or not file_type.strip():
            raise ValidationError("file_type is required")

        limits = self.resolver.resolve_upload_limits(tenant_id)
        if limits.max_file_size_bytes != UNLIMITED and size_bytes > limits.max_file_size_bytes:
            return self._deny(tenant_id, size_bytes, file_type, UploadDenial.FILE_TOO_LARGE)
        if not limits.allows_type(file_type):
            return self._deny(tenant_id, size_bytes, file_type, UploadDenial.FILE_TYPE_NOT_ALLOWED)

        quota = self.ledger.try_consume(
            tenant_id, UPLOAD_RESOURCE, size_bytes, idempotency_key=idempotency_key, now=now
        )
        if not quota.granted:
            return self._deny(tenant_id, size_bytes, file_type, quota.reason, UPLOAD_RESOURCE)

        storage = self.ledger.try_consume(
            tenant_id, STORAGE_RESOURCE, size_bytes, idempotency_key=idempotency_key, now=now
        )
        if not storage.granted:
            # same key on a retried call so the quota refund is applied once
            rollback_id = f"upload-rollback:{idempotency_key or uuid4().hex}"
            self.ledger.release(tenant_id, UPLOAD_RESOURCE, size_bytes, rollback_id, now=now)
            return self._deny(tenant_id, size_bytes, file_type, storage.reason, STORAGE_RESOURCE)

        logger.info(
            "[uploads] ACCEPTED",
            extra={
                "tenant_id": tenant_id,
                "size_bytes": size_bytes,
                "file_type": file_type,
                "replayed": quota.replayed and storage.replayed,
            },
        )
        return UploadDecision(
            granted=True,
            tenant_id=tenant_id,
            size_bytes=size_bytes,
            file_type=file_type,
            storage_remaining=storage.remaining,
            upload_quota_remaining=quota.remaining,
            replayed=quota.replayed and storage.replayed,
        )

    def record_delete(self, tenant_id: str, size_bytes: int, operation_id: str, *, now=None) -> ReleaseResult:
        """Give back storage for a deleted file. The monthly upload quota is not refunded."""
        return self.ledger.release(tenant_id, STORAGE_RESOURCE, size_bytes, operation_id, now=now)

    def _deny(
        self,
        tenant_id: str,
        size_bytes: int,
        file_type: str,
        reason: Optional[str],
        resource_key: Optional[str] = None,
    ) -> UploadDecision:
        logger.warning(
            "[uploads] DENIED",
            extra={
                "tenant_id": tenant_id,
                "size_bytes": size_bytes,
                "file_type": file_type,
                "reason": reason,
                "resource_key": resource_key,
            },
        )
        return UploadDecision(
            granted=False,
            tenant_id=tenant_id,
            size_bytes=size_bytes,
            file_type=file_type,
            reason=reason,
            resource_key=resource_key,
        )
