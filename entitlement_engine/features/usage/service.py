"""
entitlement_engine/features/usage/service.py

Usage ledger: atomic check-and-increment / idempotent decrement per
(tenant, resource, period).

Failure policy when counter storage is unreachable:
- consume fails closed (denied with reason storage_unavailable)
- release and reads fail open (release reported as deferred, snapshot as degraded)
"""

import logging
from typing import Dict, Optional

from entitlement_engine.core.errors import PeriodClosedError, StorageUnavailable, ValidationError
from entitlement_engine.features.entitlements.service import EntitlementResolver
from entitlement_engine.features.periods.calendar import PeriodWindow, next_window, normalize_now, window_for
from entitlement_engine.models.entitlement import EffectiveEntitlement
from entitlement_engine.models.usage import ConsumeResult, DenialReason, ReleaseResult, UsageSnapshot
from entitlement_engine.store.base import EngineStore


logger = logging.getLogger("entitlements.ledger")


def _consume_key(tenant_id: str, resource_key: str, idempotency_key: Optional[str]) -> Optional[str]:
    if not idempotency_key:
        return None
    return f"consume:{tenant_id}:{resource_key}:{idempotency_key}"


def _release_key(tenant_id: str, resource_key: str, operation_id: str) -> str:
    return f"release:{tenant_id}:{resource_key}:{operation_id}"


class UsageLedger:
    def __init__(self, store: EngineStore, resolver: EntitlementResolver):
        self.store = store
        self.resolver = resolver

    def _with_period_retry(self, entitlement: EffectiveEntitlement, now, mutate):
        """
        Run mutate(window) against the current period.

        If rollover froze that period while the call was in flight, retry once
        against the following period. Never applies the mutation to both.
        """
        window = window_for(entitlement.cadence, now)
        try:
            return window, mutate(window)
        except PeriodClosedError:
            successor = next_window(window)
            logger.info(
                "[ledger] period closed, retrying in next period",
                extra={
                    "tenant_id": entitlement.tenant_id,
                    "resource_key": entitlement.resource_key,
                    "period_id": window.period_id,
                    "next_period_id": successor.period_id,
                },
            )
            return successor, mutate(successor)

    def try_consume(
        self,
        tenant_id: str,
        resource_key: str,
        amount: int = 1,
        *,
        idempotency_key: Optional[str] = None,
        now=None,
    ) -> ConsumeResult:
        if amount <= 0:
            raise ValidationError("amount must be a positive integer")
        stamp = normalize_now(now)

        try:
            entitlement = self.resolver.resolve(tenant_id, resource_key)
        except StorageUnavailable:
            return self._storage_denial(tenant_id, resource_key, amount)

        if entitlement.unlimited:
            return ConsumeResult(
                granted=True,
                tenant_id=tenant_id,
                resource_key=resource_key,
                amount=amount,
                limit=entitlement.limit,
                unlimited=True,
            )

        op_key = _consume_key(tenant_id, resource_key, idempotency_key)
        try:
            window, mutation = self._with_period_retry(
                entitlement,
                stamp,
                lambda w: self.store.consume_counter(
                    tenant_id, resource_key, w, amount, entitlement.limit, op_key, stamp
                ),
            )
        except StorageUnavailable:
            return self._storage_denial(tenant_id, resource_key, amount, entitlement.limit)

        result = ConsumeResult(
            granted=mutation.applied,
            tenant_id=tenant_id,
            resource_key=resource_key,
            amount=amount,
            limit=entitlement.limit,
            consumed=mutation.consumed,
            remaining=max(0, entitlement.limit - mutation.consumed),
            period_id=window.period_id,
            reason=None if mutation.applied else DenialReason.LIMIT_EXCEEDED,
            replayed=mutation.replayed,
        )
        if mutation.applied:
            logger.info(
                "[ledger] GRANTED",
                extra={
                    "tenant_id": tenant_id,
                    "resource_key": resource_key,
                    "amount": amount,
                    "consumed": mutation.consumed,
                    "limit": entitlement.limit,
                    "replayed": mutation.replayed,
                },
            )
        else:
            logger.warning(
                "[ledger] DENIED",
                extra={
                    "tenant_id": tenant_id,
                    "resource_key": resource_key,
                    "amount": amount,
                    "consumed": mutation.consumed,
                    "limit": entitlement.limit,
                    "reason": DenialReason.LIMIT_EXCEEDED,
                },
            )
        return result

    def _storage_denial(self, tenant_id: str, resource_key: str, amount: int, limit: int = 0) -> ConsumeResult:
        logger.error(
            "[ledger] DENIED storage unavailable",
            extra={"tenant_id": tenant_id, "resource_key": resource_key, "amount": amount},
        )
        return ConsumeResult(
            granted=False,
            tenant_id=tenant_id,
            resource_key=resource_key,
            amount=amount,
            limit=limit,
            reason=DenialReason.STORAGE_UNAVAILABLE,
        )

    def release(
        self,
        tenant_id: str,
        resource_key: str,
        amount: int,
        operation_id: str,
        *,
        now=None,
    ) -> ReleaseResult:
        """Compensating decrement, applied at most once per operation_id and floored at zero."""
        if amount <= 0:
            raise ValidationError("amount must be a positive integer")
        if not operation_id:
            raise ValidationError("operation_id is required for release")
        stamp = normalize_now(now)

        try:
            entitlement = self.resolver.resolve(tenant_id, resource_key)
            if entitlement.unlimited:
                return ReleaseResult(tenant_id=tenant_id, resource_key=resource_key, amount=amount)
            op_key = _release_key(tenant_id, resource_key, operation_id)
            window, mutation = self._with_period_retry(
                entitlement,
                stamp,
                lambda w: self.store.release_counter(tenant_id, resource_key, w, amount, op_key, stamp),
            )
        except StorageUnavailable:
            logger.warning(
                "[ledger] RELEASE_DEFERRED storage unavailable",
                extra={"tenant_id": tenant_id, "resource_key": resource_key, "amount": amount, "operation_id": operation_id},
            )
            return ReleaseResult(tenant_id=tenant_id, resource_key=resource_key, amount=amount, deferred=True)

        logger.info(
            "[ledger] RELEASED",
            extra={
                "tenant_id": tenant_id,
                "resource_key": resource_key,
                "released": mutation.delta,
                "consumed": mutation.consumed,
                "replayed": mutation.replayed,
            },
        )
        return ReleaseResult(
            tenant_id=tenant_id,
            resource_key=resource_key,
            amount=amount,
            released=0 if mutation.replayed else mutation.delta,
            consumed=mutation.consumed,
            period_id=window.period_id,
            replayed=mutation.replayed,
        )

    def _consumed(self, entitlement: EffectiveEntitlement, window: PeriodWindow) -> int:
        counter = self.store.get_counter(entitlement.tenant_id, entitlement.resource_key, window.period_id)
        return counter.consumed if counter else 0

    def snapshot(self, tenant_id: str, resource_key: str, *, now=None) -> UsageSnapshot:
        entitlement = self.resolver.resolve(tenant_id, resource_key)
        window = window_for(entitlement.cadence, normalize_now(now))
        if entitlement.unlimited:
            return UsageSnapshot(
                tenant_id=tenant_id,
                resource_key=resource_key,
                limit=entitlement.limit,
                consumed=0,
                remaining=None,
                unlimited=True,
                period_id=window.period_id,
            )
        degraded = False
        try:
            consumed = self._consumed(entitlement, window)
        except StorageUnavailable:
            logger.warning(
                "[ledger] snapshot degraded, counter storage unavailable",
                extra={"tenant_id": tenant_id, "resource_key": resource_key},
            )
            consumed, degraded = 0, True
        return UsageSnapshot(
            tenant_id=tenant_id,
            resource_key=resource_key,
            limit=entitlement.limit,
            consumed=consumed,
            remaining=max(0, entitlement.limit - consumed),
            unlimited=False,
            period_id=window.period_id,
            degraded=degraded,
        )

    def usage_ratios(self, tenant_id: str, *, now=None) -> Dict[str, float]:
        """consumed/limit for every limited resource of the tenant. Unlimited ones are excluded."""
        stamp = normalize_now(now)
        ratios: Dict[str, float] = {}
        for key, entitlement in self.resolver.resolve_all(tenant_id).items():
            if entitlement.unlimited:
                continue
            try:
                consumed = self._consumed(entitlement, window_for(entitlement.cadence, stamp))
            except StorageUnavailable:
                logger.warning(
                    "[ledger] ratio skipped, counter storage unavailable",
                    extra={"tenant_id": tenant_id, "resource_key": key},
                )
                continue
            ratios[key] = min(1.0, consumed / entitlement.limit)
        return ratios
