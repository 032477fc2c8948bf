"""
Upload Guard Tests

Verify:
1. Size and type checks run before any quota is charged
2. Accepted uploads charge both the storage and the monthly upload quota
3. A storage denial refunds the quota charge exactly once
4. Deletes give storage back but not the monthly quota
"""

import pytest

from entitlement_engine.conftest import NOW
from entitlement_engine.core.errors import ValidationError
from entitlement_engine.models.resources import STORAGE_RESOURCE, UPLOAD_RESOURCE
from entitlement_engine.models.upload import UploadDenial
from entitlement_engine.models.usage import DenialReason


@pytest.fixture
def small_tenant(governance, make_tenant):
    """Tenant with 1,000 byte files, 1,500 bytes of storage and a 2,000 byte monthly quota."""
    make_tenant(governance, "gym-1", "starter")
    governance.tenants.assign_custom_plan(
        "gym-1",
        {
            "upload_limits": {
                "max_file_size_bytes": 1_000,
                "total_storage_bytes": 1_500,
                "monthly_upload_quota_bytes": 2_000,
                "allowed_file_types": ["pdf", "png"],
            }
        },
        now=NOW,
    )
    return "gym-1"


def _consumed(governance, tenant_id, resource_key):
    return governance.ledger.snapshot(tenant_id, resource_key, now=NOW).consumed


class TestUploadChecks:
    def test_file_too_large(self, governance, small_tenant):
        decision = governance.uploads.check_upload(small_tenant, 1_001, "pdf", now=NOW)
        assert not decision.granted
        assert decision.reason == UploadDenial.FILE_TOO_LARGE
        assert governance.store.list_counters(tenant_id=small_tenant) == []

    def test_file_type_not_allowed(self, governance, small_tenant):
        decision = governance.uploads.check_upload(small_tenant, 10, "exe", now=NOW)
        assert not decision.granted
        assert decision.reason == UploadDenial.FILE_TYPE_NOT_ALLOWED

    def test_file_type_is_normalised(self, governance, small_tenant):
        assert governance.uploads.check_upload(small_tenant, 10, ".PDF", now=NOW).granted

    def test_invalid_input(self, governance, small_tenant):
        with pytest.raises(ValidationError):
            governance.uploads.check_upload(small_tenant, 0, "pdf", now=NOW)
        with pytest.raises(ValidationError):
            governance.uploads.check_upload(small_tenant, 10, " ", now=NOW)

    def test_custom_sizes_keep_base_file_types(self, governance, make_tenant):
        make_tenant(governance, "gym-2", "starter")
        governance.tenants.assign_custom_plan(
            "gym-2",
            {
                "upload_limits": {
                    "max_file_size_bytes": 5_000,
                    "total_storage_bytes": 10_000,
                    "monthly_upload_quota_bytes": 10_000,
                }
            },
            now=NOW,
        )
        blocked = governance.uploads.check_upload("gym-2", 100, "exe", now=NOW)
        assert blocked.reason == UploadDenial.FILE_TYPE_NOT_ALLOWED
        assert governance.uploads.check_upload("gym-2", 100, "docx", now=NOW).granted

    def test_base_plan_limits(self, governance, make_tenant):
        make_tenant(governance, "gym-2", "starter")
        assert governance.uploads.check_upload("gym-2", 2 * 1024 * 1024, "docx", now=NOW).granted
        too_big = governance.uploads.check_upload("gym-2", 11 * 1024 * 1024, "pdf", now=NOW)
        assert too_big.reason == UploadDenial.FILE_TOO_LARGE


class TestUploadQuotas:
    def test_accepted_upload_charges_both(self, governance, small_tenant):
        decision = governance.uploads.check_upload(small_tenant, 800, "pdf", now=NOW)

        assert decision.granted
        assert decision.storage_remaining == 700
        assert decision.upload_quota_remaining == 1_200
        assert _consumed(governance, small_tenant, STORAGE_RESOURCE) == 800
        assert _consumed(governance, small_tenant, UPLOAD_RESOURCE) == 800

    def test_storage_denial_refunds_quota(self, governance, small_tenant):
        governance.uploads.check_upload(small_tenant, 800, "pdf", now=NOW)
        decision = governance.uploads.check_upload(small_tenant, 800, "pdf", now=NOW)

        assert not decision.granted
        assert decision.reason == DenialReason.LIMIT_EXCEEDED
        assert decision.resource_key == STORAGE_RESOURCE
        assert _consumed(governance, small_tenant, UPLOAD_RESOURCE) == 800
        assert _consumed(governance, small_tenant, STORAGE_RESOURCE) == 800

    def test_retried_storage_denial_refunds_once(self, governance, small_tenant):
        governance.uploads.check_upload(small_tenant, 800, "pdf", idempotency_key="f1", now=NOW)
        for _ in range(2):
            decision = governance.uploads.check_upload(small_tenant, 800, "pdf", idempotency_key="f2", now=NOW)
            assert not decision.granted
        assert _consumed(governance, small_tenant, UPLOAD_RESOURCE) == 800

    def test_monthly_quota_denial(self, governance, small_tenant):
        for n in range(2):
            assert governance.uploads.check_upload(small_tenant, 800, "png", now=NOW).granted
            governance.uploads.record_delete(small_tenant, 800, f"del-{n}", now=NOW)

        decision = governance.uploads.check_upload(small_tenant, 800, "png", now=NOW)
        assert not decision.granted
        assert decision.resource_key == UPLOAD_RESOURCE
        assert _consumed(governance, small_tenant, STORAGE_RESOURCE) == 0

    def test_delete_frees_storage_only(self, governance, small_tenant):
        governance.uploads.check_upload(small_tenant, 800, "pdf", now=NOW)
        result = governance.uploads.record_delete(small_tenant, 800, "del-1", now=NOW)
        again = governance.uploads.record_delete(small_tenant, 800, "del-1", now=NOW)

        assert result.released == 800
        assert again.replayed
        assert _consumed(governance, small_tenant, STORAGE_RESOURCE) == 0
        assert _consumed(governance, small_tenant, UPLOAD_RESOURCE) == 800

    def test_replayed_upload_charges_once(self, governance, small_tenant):
        first = governance.uploads.check_upload(small_tenant, 500, "pdf", idempotency_key="f1", now=NOW)
        second = governance.uploads.check_upload(small_tenant, 500, "pdf", idempotency_key="f1", now=NOW)

        assert first.granted and not first.replayed
        assert second.granted and second.replayed
        assert _consumed(governance, small_tenant, STORAGE_RESOURCE) == 500
        assert _consumed(governance, small_tenant, UPLOAD_RESOURCE) == 500
