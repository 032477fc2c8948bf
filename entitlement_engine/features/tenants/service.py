"""
entitlement_engine/features/tenants/service.py

Tenant administration commands.

Every command writes an audit record. Overlays are never deleted: slots are
zeroed and the custom plan reference is cleared instead.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Union

from entitlement_engine.core.errors import ConflictError, TenantNotFoundError, ValidationError
from entitlement_engine.features.periods.calendar import normalize_now
from entitlement_engine.features.plans.service import PlanRegistry, parse_plan
from entitlement_engine.models.audit import AuditAction, AuditRecord
from entitlement_engine.models.plan import PlanDefinition
from entitlement_engine.models.resources import RESOURCE_CADENCE, TenantCategory
from entitlement_engine.models.tenant import TenantEntitlementOverlay, TenantRecord
from entitlement_engine.store.base import EngineStore


logger = logging.getLogger("entitlements.tenants")


class TenantAdmin:
    def __init__(self, store: EngineStore, registry: PlanRegistry):
        self.store = store
        self.registry = registry

    def _audit(self, action: str, tenant_id: str, subject: Optional[str], payload: Dict[str, Any], actor: Optional[str], now) -> None:
        self.store.append_audit(AuditRecord(
            action=action,
            tenant_id=tenant_id,
            subject=subject,
            payload=payload,
            actor=actor,
            created_at=now,
        ))

    def get_tenant(self, tenant_id: str) -> TenantRecord:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"tenant {tenant_id} not found")
        return tenant

    def get_overlay(self, tenant_id: str) -> TenantEntitlementOverlay:
        overlay = self.store.get_overlay(tenant_id)
        if overlay is None:
            raise TenantNotFoundError(f"tenant {tenant_id} not found")
        return overlay

    def create_tenant(
        self,
        tenant_id: str,
        category: Union[TenantCategory, str],
        plan_key: str,
        *,
        actor: Optional[str] = None,
        now=None,
    ) -> TenantRecord:
        stamp = normalize_now(now)
        try:
            category = TenantCategory(category)
        except ValueError:
            raise ValidationError(f"unknown tenant category: {category}")
        plan = self.registry.get_base_plan(plan_key)
        if plan.category != category:
            raise ValidationError(f"plan {plan_key} is for {plan.category.value} tenants")

        tenant = self.store.create_tenant(TenantRecord(
            tenant_id=tenant_id, category=category, plan_key=plan_key, created_at=stamp
        ))
        self._audit(AuditAction.TENANT_CREATED, tenant_id, plan_key, {"category": category.value}, actor, stamp)
        logger.info("[tenants] CREATED", extra={"tenant_id": tenant_id, "plan_key": plan_key})
        return tenant

    def _check_base_plan(self, tenant: TenantRecord, plan_key: str) -> PlanDefinition:
        plan = self.registry.get_base_plan(plan_key)
        if plan.category != tenant.category:
            raise ValidationError(f"plan {plan_key} is for {plan.category.value} tenants")
        return plan

    def _check_grant(self, tenant: TenantRecord, resource_key: str, slots: int) -> None:
        if resource_key not in RESOURCE_CADENCE:
            raise ValidationError(f"unknown resource key: {resource_key}")
        if slots <= 0:
            raise ValidationError("slots must be a positive integer")
        if tenant.category == TenantCategory.INDIVIDUAL:
            raise ValidationError("individual tenants cannot receive extra slots")

    def _custom_plan_for(self, tenant: TenantRecord, definition: Union[PlanDefinition, Dict[str, Any]]) -> PlanDefinition:
        tenant_id = tenant.tenant_id
        if isinstance(definition, dict):
            definition = {
                "category": tenant.category.value,
                "is_custom": True,
                "tenant_id": tenant_id,
                "plan_key": f"custom-{tenant_id}",
                "display_name": f"Custom ({tenant_id})",
                **definition,
            }
        plan = parse_plan(definition)
        if not plan.is_custom or plan.tenant_id != tenant_id:
            raise ValidationError(f"plan {plan.plan_key} is not a custom plan for tenant {tenant_id}")
        if plan.category != tenant.category:
            raise ValidationError(f"custom plan category must be {tenant.category.value}")
        existing = self.store.get_plan(plan.plan_key)
        if existing is not None and (not existing.is_custom or existing.tenant_id != tenant_id):
            raise ConflictError(f"plan key {plan.plan_key} is taken by another plan")
        return plan

    def change_base_plan(self, tenant_id: str, plan_key: str, *, actor: Optional[str] = None, now=None) -> TenantRecord:
        """Swap the base plan. Applies to the next query; counters are left untouched."""
        stamp = normalize_now(now)
        tenant = self.get_tenant(tenant_id)
        self._check_base_plan(tenant, plan_key)
        updated = self.store.set_tenant_plan(tenant_id, plan_key)
        self._audit(
            AuditAction.BASE_PLAN_CHANGED, tenant_id, plan_key,
            {"previous_plan_key": tenant.plan_key}, actor, stamp,
        )
        logger.info(
            "[tenants] BASE_PLAN_CHANGED",
            extra={"tenant_id": tenant_id, "plan_key": plan_key, "previous_plan_key": tenant.plan_key},
        )
        return updated

    def grant_extra_slots(
        self,
        tenant_id: str,
        resource_key: str,
        slots: int,
        *,
        actor: Optional[str] = None,
        now=None,
    ) -> TenantEntitlementOverlay:
        stamp = normalize_now(now)
        self._check_grant(self.get_tenant(tenant_id), resource_key, slots)

        overlay = self.store.add_extra_slots(tenant_id, resource_key, slots, stamp)
        self._audit(
            AuditAction.SLOTS_GRANTED, tenant_id, resource_key,
            {"granted": slots, "total": overlay.slots_for(resource_key)}, actor, stamp,
        )
        logger.info(
            "[tenants] SLOTS_GRANTED",
            extra={"tenant_id": tenant_id, "resource_key": resource_key, "granted": slots},
        )
        return overlay

    def zero_extra_slots(
        self,
        tenant_id: str,
        resource_key: Optional[str] = None,
        *,
        actor: Optional[str] = None,
        now=None,
    ) -> TenantEntitlementOverlay:
        stamp = normalize_now(now)
        before = self.get_overlay(tenant_id)
        overlay = self.store.zero_extra_slots(tenant_id, resource_key, stamp)
        cleared = {k: v for k, v in before.extra_slots.items() if resource_key in (None, k)}
        self._audit(AuditAction.SLOTS_ZEROED, tenant_id, resource_key, {"cleared": cleared}, actor, stamp)
        return overlay

    def assign_custom_plan(
        self,
        tenant_id: str,
        definition: Union[PlanDefinition, Dict[str, Any]],
        *,
        actor: Optional[str] = None,
        now=None,
    ) -> TenantEntitlementOverlay:
        """Store (or replace) the tenant's custom plan and point its overlay at it."""
        stamp = normalize_now(now)
        plan = self._custom_plan_for(self.get_tenant(tenant_id), definition)

        self.registry.upsert_plan(plan, actor=actor, now=stamp)
        overlay = self.store.set_custom_plan(tenant_id, plan.plan_key, stamp)
        self._audit(AuditAction.CUSTOM_PLAN_ASSIGNED, tenant_id, plan.plan_key, {}, actor, stamp)
        logger.info("[tenants] CUSTOM_PLAN_ASSIGNED", extra={"tenant_id": tenant_id, "plan_key": plan.plan_key})
        return overlay

    def clear_custom_plan(self, tenant_id: str, *, actor: Optional[str] = None, now=None) -> TenantEntitlementOverlay:
        stamp = normalize_now(now)
        before = self.get_overlay(tenant_id)
        overlay = self.store.set_custom_plan(tenant_id, None, stamp)
        self._audit(
            AuditAction.CUSTOM_PLAN_CLEARED, tenant_id, before.custom_plan_key, {}, actor, stamp,
        )
        return overlay

    def update_overlay(
        self,
        tenant_id: str,
        *,
        zero_all_slots: bool = False,
        zero_slots: Iterable[str] = (),
        grant_slots: Optional[Dict[str, int]] = None,
        custom_plan: Union[PlanDefinition, Dict[str, Any], None] = None,
        clear_custom_plan: bool = False,
        base_plan_key: Optional[str] = None,
        actor: Optional[str] = None,
        now=None,
    ) -> TenantEntitlementOverlay:
        """
        Apply a batch of overlay commands: zero, grant, custom plan, base plan.

        Every command is checked before the first one is applied, so a rejected
        batch leaves the overlay, the tenant and the audit trail as they were.
        """
        stamp = normalize_now(now)
        tenant = self.get_tenant(tenant_id)
        zero_slots = list(zero_slots)
        grant_slots = dict(grant_slots or {})

        for resource_key in zero_slots:
            if resource_key not in RESOURCE_CADENCE:
                raise ValidationError(f"unknown resource key: {resource_key}")
        for resource_key, slots in grant_slots.items():
            self._check_grant(tenant, resource_key, slots)
        plan = self._custom_plan_for(tenant, custom_plan) if custom_plan is not None else None
        if base_plan_key:
            self._check_base_plan(tenant, base_plan_key)

        if zero_all_slots:
            self.zero_extra_slots(tenant_id, actor=actor, now=stamp)
        for resource_key in zero_slots:
            self.zero_extra_slots(tenant_id, resource_key, actor=actor, now=stamp)
        for resource_key, slots in grant_slots.items():
            self.grant_extra_slots(tenant_id, resource_key, slots, actor=actor, now=stamp)
        if plan is not None:
            self.assign_custom_plan(tenant_id, plan, actor=actor, now=stamp)
        elif clear_custom_plan:
            self.clear_custom_plan(tenant_id, actor=actor, now=stamp)
        if base_plan_key:
            self.change_base_plan(tenant_id, base_plan_key, actor=actor, now=stamp)
        return self.get_overlay(tenant_id)
