"""
Plan Registry Tests

Verify:
1. Default catalog seeding is idempotent
2. Plan definitions are validated once, at load/upsert time
3. Upserts are versioned and audited
4. Base/custom ownership rules
"""

import pytest

from entitlement_engine.conftest import NOW
from entitlement_engine.core.errors import ConflictError, PlanNotFoundError, TenantNotFoundError, ValidationError
from entitlement_engine.features.plans.service import DEFAULT_PLANS, PlanRegistry, parse_plan
from entitlement_engine.models.audit import AuditAction
from entitlement_engine.models.resources import TenantCategory, UNLIMITED
from entitlement_engine.store.memory import MemoryStore


def _base_definition(**overrides):
    definition = {"plan_key": "studio", **DEFAULT_PLANS["starter"]}
    definition.update(overrides)
    return definition


class TestSeeding:
    def test_seed_creates_default_catalog(self):
        registry = PlanRegistry(MemoryStore())
        assert registry.seed_plans(now=NOW) == len(DEFAULT_PLANS)
        keys = [p.plan_key for p in registry.list_plans()]
        assert keys == sorted(DEFAULT_PLANS)

    def test_seed_is_idempotent_and_keeps_admin_edits(self):
        registry = PlanRegistry(MemoryStore())
        registry.seed_plans(now=NOW)
        registry.upsert_plan({**DEFAULT_PLANS["starter"], "plan_key": "starter", "price_monthly": 129.9}, now=NOW)

        assert registry.seed_plans(now=NOW) == 0
        starter = registry.get_base_plan("starter")
        assert starter.price_monthly == 129.9
        assert starter.version == 2

    def test_default_plans_shape(self):
        registry = PlanRegistry(MemoryStore())
        registry.seed_plans(now=NOW)

        starter = registry.get_base_plan("starter")
        assert starter.category == TenantCategory.BUSINESS
        assert starter.limit_for("trainer") == 5
        assert starter.rate_limits.requests_per_minute == 100

        enterprise = registry.get_base_plan("enterprise")
        assert enterprise.limit_for("trainer") == UNLIMITED

        individual = registry.get_base_plan("individual")
        assert individual.category == TenantCategory.INDIVIDUAL
        assert individual.limit_for("trainer") is None


class TestValidation:
    def test_limit_must_be_positive_or_unlimited(self):
        with pytest.raises(ValidationError):
            parse_plan(_base_definition(limits={"trainer": 0}))
        with pytest.raises(ValidationError):
            parse_plan(_base_definition(limits={"trainer": -5}))
        assert parse_plan(_base_definition(limits={"trainer": -1})).limit_for("trainer") == UNLIMITED

    def test_unknown_limit_key_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_plan(_base_definition(limits={"spaceships": 3}))
        assert "spaceships" in str(exc.value)

    def test_unknown_feature_rejected(self):
        with pytest.raises(ValidationError):
            parse_plan(_base_definition(feature_flags={"teleport": True}))

    def test_storage_limits_come_from_upload_section(self):
        with pytest.raises(ValidationError):
            parse_plan(_base_definition(limits={"storage_bytes": 10}))
        plan = parse_plan(_base_definition())
        assert plan.limit_for("storage_bytes") == plan.upload_limits.total_storage_bytes
        assert plan.limit_for("upload_bytes") == plan.upload_limits.monthly_upload_quota_bytes

    def test_base_plan_needs_every_section(self):
        definition = _base_definition()
        definition.pop("rate_limits")
        with pytest.raises(ValidationError) as exc:
            parse_plan(definition)
        assert "rate_limits" in str(exc.value)

    def test_base_plan_cannot_leave_caps_to_inheritance(self):
        ai_limits = {k: v for k, v in DEFAULT_PLANS["starter"]["ai_limits"].items() if k != "global_monthly_tokens"}
        with pytest.raises(ValidationError) as exc:
            parse_plan(_base_definition(ai_limits=ai_limits))
        assert "global_monthly_tokens" in str(exc.value)

        upload_limits = {
            k: v for k, v in DEFAULT_PLANS["starter"]["upload_limits"].items() if k != "allowed_file_types"
        }
        with pytest.raises(ValidationError) as exc:
            parse_plan(_base_definition(upload_limits=upload_limits))
        assert "allowed_file_types" in str(exc.value)

    def test_custom_plan_needs_tenant(self):
        with pytest.raises(ValidationError):
            parse_plan({"plan_key": "custom-x", "category": "business", "display_name": "X", "is_custom": True})

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            parse_plan(_base_definition(price_monthly=-1))


class TestUpsert:
    def test_upsert_versions_and_audits(self):
        store = MemoryStore()
        registry = PlanRegistry(store)
        first = registry.upsert_plan(_base_definition(), actor="ops@example.com", now=NOW)
        second = registry.upsert_plan(_base_definition(price_monthly=50.0), now=NOW)

        assert first.version == 1
        assert second.version == 2
        assert registry.get_plan("studio").price_monthly == 50.0

        records = store.list_audit(action=AuditAction.PLAN_UPSERTED)
        assert [r.payload["version"] for r in records] == [1, 2]
        assert records[0].actor == "ops@example.com"
        assert records[1].payload["previous_version"] == 1

    def test_base_plan_cannot_become_custom(self, governance, make_tenant):
        make_tenant(governance, "t-1")
        with pytest.raises(ConflictError):
            governance.plans.upsert_plan({
                "plan_key": "starter",
                "category": "business",
                "display_name": "Hijack",
                "is_custom": True,
                "tenant_id": "t-1",
            })

    def test_custom_plan_for_missing_tenant(self, governance):
        with pytest.raises(TenantNotFoundError):
            governance.plans.upsert_plan({
                "plan_key": "custom-ghost",
                "category": "business",
                "display_name": "Ghost",
                "is_custom": True,
                "tenant_id": "ghost",
            })

    def test_lookup_errors(self, governance, make_tenant):
        with pytest.raises(PlanNotFoundError):
            governance.plans.get_plan("platinum")
        make_tenant(governance, "t-1")
        governance.tenants.assign_custom_plan("t-1", {"limits": {"trainer": 9}}, now=NOW)
        # a custom plan is not a base plan
        with pytest.raises(PlanNotFoundError):
            governance.plans.get_base_plan("custom-t-1")

    def test_list_plans_hides_custom_by_default(self, governance, make_tenant):
        make_tenant(governance, "t-1")
        governance.tenants.assign_custom_plan("t-1", {"limits": {"trainer": 9}}, now=NOW)
        assert "custom-t-1" not in [p.plan_key for p in governance.plans.list_plans()]
        assert "custom-t-1" in [p.plan_key for p in governance.plans.list_plans(include_custom=True)]
