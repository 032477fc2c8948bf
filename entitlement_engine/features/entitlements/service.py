"""
entitlement_engine/features/entitlements/service.py

Entitlement resolution.

Merges a tenant's base plan, custom plan and slot overlay into one effective
value per query:

    limit = custom.limit(r) ?? base.limit(r) + overlay.extra_slots(r)

A custom plan field wins outright; fields it omits inherit from the tenant's
base plan. The unlimited sentinel short-circuits before slots are added.
Nothing here is cached, so a plan or overlay change is visible on the next call.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from entitlement_engine.core.errors import TenantNotFoundError, UnknownResourceError
from entitlement_engine.features.plans.service import PlanRegistry
from entitlement_engine.models.entitlement import AiBudgetCaps, EffectiveEntitlement, EntitlementSource
from entitlement_engine.models.plan import PlanDefinition, UploadLimits
from entitlement_engine.models.resources import (
    ENDPOINT_CLASSES,
    GLOBAL_PROVIDER,
    KNOWN_FEATURES,
    RESOURCE_CADENCE,
    UNLIMITED,
    cadence_for,
)
from entitlement_engine.models.tenant import TenantEntitlementOverlay, TenantRecord
from entitlement_engine.store.base import EngineStore


logger = logging.getLogger("entitlements.resolver")


@dataclass(frozen=True)
class _TenantPlans:
    tenant: TenantRecord
    overlay: Optional[TenantEntitlementOverlay]
    base: PlanDefinition
    custom: Optional[PlanDefinition]

    def pick(self, section: str):
        """Return (plan, value) for a whole plan section, custom first."""
        if self.custom is not None and getattr(self.custom, section) is not None:
            return self.custom, getattr(self.custom, section)
        return self.base, getattr(self.base, section)


def _source(plan: PlanDefinition) -> EntitlementSource:
    return EntitlementSource.CUSTOM if plan.is_custom else EntitlementSource.BASE


def _unknown(tenant_id: str, key: str, kind: str = "resource") -> UnknownResourceError:
    logger.error(
        "[resolver] UNKNOWN_RESOURCE",
        extra={"tenant_id": tenant_id, "resource_key": key, "kind": kind},
    )
    return UnknownResourceError(f"{kind} {key!r} is not defined for tenant {tenant_id}")


class EntitlementResolver:
    def __init__(self, store: EngineStore, registry: PlanRegistry):
        self.store = store
        self.registry = registry

    def _plans(self, tenant_id: str) -> _TenantPlans:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"tenant {tenant_id} not found")
        return _TenantPlans(
            tenant=tenant,
            overlay=self.store.get_overlay(tenant_id),
            base=self.registry.get_base_plan(tenant.plan_key),
            custom=self.registry.get_custom_plan(tenant_id),
        )

    def _resolve_from(self, plans: _TenantPlans, resource_key: str) -> EffectiveEntitlement:
        tenant_id = plans.tenant.tenant_id
        if resource_key not in RESOURCE_CADENCE:
            raise _unknown(tenant_id, resource_key)

        plan, limit = None, None
        for candidate in (plans.custom, plans.base):
            if candidate is None:
                continue
            value = candidate.limit_for(resource_key)
            if value is not None:
                plan, limit = candidate, value
                break
        if plan is None:
            raise _unknown(tenant_id, resource_key)

        extra = plans.overlay.slots_for(resource_key) if plans.overlay else 0
        if limit == UNLIMITED:
            extra = 0
        else:
            limit += extra

        return EffectiveEntitlement(
            tenant_id=tenant_id,
            resource_key=resource_key,
            limit=limit,
            source=_source(plan),
            plan_key=plan.plan_key,
            extra_slots=extra,
            cadence=cadence_for(resource_key),
        )

    def resolve(self, tenant_id: str, resource_key: str) -> EffectiveEntitlement:
        return self._resolve_from(self._plans(tenant_id), resource_key)

    def resolve_all(self, tenant_id: str) -> Dict[str, EffectiveEntitlement]:
        """Every resource either plan defines for the tenant."""
        plans = self._plans(tenant_id)
        keys = set(plans.base.limited_keys())
        if plans.custom is not None:
            keys |= plans.custom.limited_keys()
        return {key: self._resolve_from(plans, key) for key in sorted(keys)}

    def resolve_feature(self, tenant_id: str, feature: str) -> bool:
        if feature not in KNOWN_FEATURES:
            raise _unknown(tenant_id, feature, "feature")
        plans = self._plans(tenant_id)
        if plans.custom is not None and feature in plans.custom.feature_flags:
            return plans.custom.feature_flags[feature]
        if feature in plans.base.feature_flags:
            return plans.base.feature_flags[feature]
        raise _unknown(tenant_id, feature, "feature")

    def resolve_ai_budget(self, tenant_id: str, provider: str) -> AiBudgetCaps:
        if provider == GLOBAL_PROVIDER:
            raise _unknown(tenant_id, provider, "provider")
        plans = self._plans(tenant_id)

        budget, budget_plan = None, None
        for candidate in (plans.custom, plans.base):
            if candidate is not None and candidate.ai_limits is not None:
                if provider in candidate.ai_limits.providers:
                    budget, budget_plan = candidate.ai_limits.providers[provider], candidate
                    break
        if budget is None:
            raise _unknown(tenant_id, provider, "provider")

        global_tokens = plans.base.ai_limits.global_monthly_tokens
        custom_ai = plans.custom.ai_limits if plans.custom is not None else None
        if custom_ai is not None and custom_ai.global_monthly_tokens is not None:
            global_tokens = custom_ai.global_monthly_tokens
        return AiBudgetCaps(
            tenant_id=tenant_id,
            provider=provider,
            provider_tokens=budget.monthly_tokens,
            provider_cost=budget.cost_budget,
            global_tokens=global_tokens,
            plan_key=budget_plan.plan_key,
            source=_source(budget_plan),
        )

    def resolve_rate_limit(self, tenant_id: str, endpoint_class: str) -> int:
        """Requests allowed per minute for the endpoint class."""
        if endpoint_class not in ENDPOINT_CLASSES:
            raise _unknown(tenant_id, endpoint_class, "endpoint class")
        _, rate_limits = self._plans(tenant_id).pick("rate_limits")
        if endpoint_class == "webhook":
            return rate_limits.webhook_calls_per_minute
        return rate_limits.requests_per_minute

    def resolve_upload_limits(self, tenant_id: str) -> UploadLimits:
        plans = self._plans(tenant_id)
        _, upload_limits = plans.pick("upload_limits")
        if upload_limits.allowed_file_types is None:
            upload_limits = upload_limits.model_copy(
                update={"allowed_file_types": plans.base.upload_limits.allowed_file_types}
            )
        return upload_limits
