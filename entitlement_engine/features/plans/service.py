"""
entitlement_engine/features/plans/service.py

Plan registry.

Handles:
- Default plan catalog seeding (individual, starter, professional, enterprise)
- Base and custom plan lookup
- Validated, versioned, audited plan upserts
"""

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from entitlement_engine.core.errors import ConflictError, PlanNotFoundError, TenantNotFoundError, ValidationError
from entitlement_engine.features.periods.calendar import normalize_now
from entitlement_engine.models.audit import AuditAction, AuditRecord
from entitlement_engine.models.plan import PlanDefinition
from entitlement_engine.store.base import EngineStore


logger = logging.getLogger("entitlements.plans")

MB = 1024 * 1024
GB = 1024 * MB

_BASIC_TYPES = ["jpg", "jpeg", "png", "pdf"]
_OFFICE_TYPES = _BASIC_TYPES + ["doc", "docx", "txt"]
_MEDIA_TYPES = _OFFICE_TYPES + ["mp4", "mov", "avi", "xlsx", "csv"]
_ARCHIVE_TYPES = _MEDIA_TYPES + ["zip", "rar", "json", "xml"]


def _providers(openai: int, anthropic: int, groq: int) -> Dict[str, Dict[str, float]]:
    # one currency unit of cost budget per thousand tokens
    return {
        "openai": {"monthly_tokens": openai, "cost_budget": openai / 1000},
        "anthropic": {"monthly_tokens": anthropic, "cost_budget": anthropic / 1000},
        "groq": {"monthly_tokens": groq, "cost_budget": groq / 1000},
    }


# Default plan configurations
DEFAULT_PLANS: Dict[str, Dict[str, Any]] = {
    "individual": {
        "display_name": "Individual",
        "category": "individual",
        "price_monthly": 0.0,
        "limits": {
            "owner": 1,
            "workouts": 10,
            "exercises": 50,
            "api_calls": 100,
            "reports": 3,
            "backups": 7,
        },
        "ai_limits": {"global_monthly_tokens": 10_000, "providers": _providers(10_000, 5_000, 5_000)},
        "upload_limits": {
            "max_file_size_bytes": 5 * MB,
            "total_storage_bytes": 1 * GB,
            "monthly_upload_quota_bytes": 256 * MB,
            "allowed_file_types": _BASIC_TYPES,
        },
        "feature_flags": {
            "ai_chat": True,
            "bioimpedance": True,
            "reports": True,
            "whatsapp_integration": False,
            "stripe_integration": False,
            "advanced_analytics": False,
            "custom_branding": False,
            "custom_domain": False,
            "api_access": False,
            "webhooks": False,
            "multi_language": False,
            "white_label": False,
            "ads_enabled": True,
        },
        "rate_limits": {"requests_per_minute": 60, "webhook_calls_per_minute": 10},
    },
    "starter": {
        "display_name": "Starter",
        "category": "business",
        "price_monthly": 99.90,
        "extra_slot_price": 19.90,
        "limits": {
            "owner": 1,
            "admin": 1,
            "trainer": 5,
            "nutritionist": 2,
            "member": 5,
            "clients": 50,
            "workouts": 10,
            "exercises": 100,
            "crm_contacts": 100,
            "integrations": 3,
            "webhooks": 5,
            "api_calls": 1_000,
            "reports": 10,
            "backups": 30,
        },
        "ai_limits": {"global_monthly_tokens": 100_000, "providers": _providers(50_000, 30_000, 20_000)},
        "upload_limits": {
            "max_file_size_bytes": 10 * MB,
            "total_storage_bytes": 5 * GB,
            "monthly_upload_quota_bytes": 1 * GB,
            "allowed_file_types": _OFFICE_TYPES,
        },
        "feature_flags": {
            "ai_chat": True,
            "bioimpedance": True,
            "reports": True,
            "whatsapp_integration": False,
            "stripe_integration": False,
            "advanced_analytics": False,
            "custom_branding": False,
            "custom_domain": False,
            "api_access": False,
            "webhooks": False,
            "multi_language": False,
            "white_label": False,
            "ads_enabled": True,
        },
        "rate_limits": {"requests_per_minute": 100, "webhook_calls_per_minute": 50},
    },
    "professional": {
        "display_name": "Professional",
        "category": "business",
        "price_monthly": 199.90,
        "extra_slot_price": 14.90,
        "limits": {
            "owner": 1,
            "admin": 3,
            "trainer": 15,
            "nutritionist": 5,
            "member": 15,
            "clients": 200,
            "workouts": 100,
            "exercises": 1_000,
            "crm_contacts": 1_000,
            "integrations": 8,
            "webhooks": 15,
            "api_calls": 5_000,
            "reports": 50,
            "backups": 90,
        },
        "ai_limits": {"global_monthly_tokens": 500_000, "providers": _providers(250_000, 150_000, 100_000)},
        "upload_limits": {
            "max_file_size_bytes": 50 * MB,
            "total_storage_bytes": 25 * GB,
            "monthly_upload_quota_bytes": 5 * GB,
            "allowed_file_types": _MEDIA_TYPES,
        },
        "feature_flags": {
            "ai_chat": True,
            "bioimpedance": True,
            "reports": True,
            "whatsapp_integration": True,
            "stripe_integration": True,
            "advanced_analytics": True,
            "custom_branding": True,
            "custom_domain": True,
            "api_access": True,
            "webhooks": True,
            "multi_language": True,
            "white_label": False,
            "ads_enabled": True,
        },
        "rate_limits": {"requests_per_minute": 500, "webhook_calls_per_minute": 200},
    },
    "enterprise": {
        "display_name": "Enterprise",
        "category": "business",
        "price_monthly": 399.90,
        "extra_slot_price": 0.0,
        "limits": {
            "owner": 1,
            "admin": -1,  # unlimited
            "trainer": -1,
            "nutritionist": -1,
            "member": -1,
            "clients": -1,
            "workouts": -1,
            "exercises": -1,
            "crm_contacts": -1,
            "integrations": -1,
            "webhooks": -1,
            "api_calls": -1,
            "reports": -1,
            "backups": -1,
        },
        "ai_limits": {"global_monthly_tokens": 2_000_000, "providers": _providers(1_000_000, 600_000, 400_000)},
        "upload_limits": {
            "max_file_size_bytes": 200 * MB,
            "total_storage_bytes": 100 * GB,
            "monthly_upload_quota_bytes": 20 * GB,
            "allowed_file_types": _ARCHIVE_TYPES,
        },
        "feature_flags": {
            "ai_chat": True,
            "bioimpedance": True,
            "reports": True,
            "whatsapp_integration": True,
            "stripe_integration": True,
            "advanced_analytics": True,
            "custom_branding": True,
            "custom_domain": True,
            "api_access": True,
            "webhooks": True,
            "multi_language": True,
            "white_label": True,
            "ads_enabled": False,
        },
        "rate_limits": {"requests_per_minute": 1_000, "webhook_calls_per_minute": 500},
    },
}


def parse_plan(data: Union[PlanDefinition, Dict[str, Any]]) -> PlanDefinition:
    """Validate raw plan data once, converting pydantic errors to ValidationError."""
    if isinstance(data, PlanDefinition):
        return data
    try:
        return PlanDefinition.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = f"{location}: {first['msg']}" if location else first["msg"]
        raise ValidationError(f"invalid plan definition ({detail})")


class PlanRegistry:
    """Base plans shared by tenants plus tenant-owned custom plans."""

    def __init__(self, store: EngineStore):
        self.store = store

    def get_plan(self, plan_key: str) -> PlanDefinition:
        plan = self.store.get_plan(plan_key)
        if plan is None:
            raise PlanNotFoundError(f"plan {plan_key} not found")
        return plan

    def get_base_plan(self, plan_key: str) -> PlanDefinition:
        plan = self.store.get_plan(plan_key)
        if plan is None or plan.is_custom:
            raise PlanNotFoundError(f"base plan {plan_key} not found")
        return plan

    def get_custom_plan(self, tenant_id: str) -> Optional[PlanDefinition]:
        overlay = self.store.get_overlay(tenant_id)
        if overlay is None or not overlay.custom_plan_key:
            return None
        plan = self.store.get_plan(overlay.custom_plan_key)
        if plan is None:
            # dangling reference is a configuration bug, not "no custom plan"
            raise PlanNotFoundError(
                f"custom plan {overlay.custom_plan_key} for tenant {tenant_id} not found"
            )
        return plan

    def list_plans(self, include_custom: bool = False) -> List[PlanDefinition]:
        return [p for p in self.store.list_plans() if include_custom or not p.is_custom]

    def upsert_plan(
        self,
        definition: Union[PlanDefinition, Dict[str, Any]],
        *,
        actor: Optional[str] = None,
        now=None,
    ) -> PlanDefinition:
        """
        Store a new version of a plan.

        Base plans are dereferenced by key at read time, so every tenant still
        on the base plan sees the new version on its next query. Custom plans
        are separate rows and are never touched by a base plan upsert.
        """
        plan = parse_plan(definition)
        existing = self.store.get_plan(plan.plan_key)
        if existing is not None:
            if existing.is_custom != plan.is_custom:
                raise ConflictError(f"plan {plan.plan_key} cannot switch between base and custom")
            if existing.is_custom and existing.tenant_id != plan.tenant_id:
                raise ConflictError(f"custom plan {plan.plan_key} belongs to another tenant")
        if plan.is_custom and self.store.get_tenant(plan.tenant_id) is None:
            raise TenantNotFoundError(f"tenant {plan.tenant_id} not found")

        stamp = normalize_now(now)
        version = existing.version + 1 if existing else 1
        stored = self.store.save_plan(plan.model_copy(update={"version": version, "updated_at": stamp}))
        self.store.append_audit(AuditRecord(
            action=AuditAction.PLAN_UPSERTED,
            tenant_id=plan.tenant_id,
            subject=plan.plan_key,
            payload={
                "version": version,
                "previous_version": existing.version if existing else None,
                "is_custom": plan.is_custom,
            },
            actor=actor,
            created_at=stamp,
        ))
        logger.info(
            "[plans] UPSERTED",
            extra={"plan_key": plan.plan_key, "version": version, "is_custom": plan.is_custom, "actor": actor},
        )
        return stored

    def seed_plans(self, now=None) -> int:
        """
        Seed default plans (idempotent).

        Plans that already exist are left alone, so admin edits survive restarts.
        """
        stamp = normalize_now(now)
        seeded = 0
        for plan_key, config in DEFAULT_PLANS.items():
            if self.store.get_plan(plan_key) is not None:
                continue
            plan = parse_plan({"plan_key": plan_key, **config})
            self.store.save_plan(plan.model_copy(update={"updated_at": stamp}))
            seeded += 1
        if seeded:
            logger.info("[plans] seeded default plans", extra={"count": seeded})
        return seeded
