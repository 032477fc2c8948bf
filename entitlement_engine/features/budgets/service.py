"""
entitlement_engine/features/budgets/service.py

Budget tracker for metered AI usage (tokens and cost).

Reserve/confirm split: a call reserves a pessimistic estimate before work
starts, so concurrent calls cannot jointly overrun a cap, then confirms the
true amount afterwards and the difference is refunded. A reservation needs
headroom on both the provider cap and the tenant's global cap.

Unconfirmed reservations expire after a bounded TTL and are reclaimed by the
period scheduler's sweep.
"""

import logging
from datetime import timedelta
from typing import Callable, Optional
from uuid import uuid4

from entitlement_engine.core.errors import PeriodClosedError, StorageUnavailable, ValidationError
from entitlement_engine.features.entitlements.service import EntitlementResolver
from entitlement_engine.features.periods.calendar import next_window, normalize_now, window_for
from entitlement_engine.models.budget import (
    BudgetDenial,
    BudgetState,
    Reservation,
    ReservationStatus,
    ReserveResult,
    SettlementResult,
)
from entitlement_engine.models.resources import Cadence
from entitlement_engine.store.base import BudgetCaps, EngineStore


logger = logging.getLogger("entitlements.budget")

DEFAULT_RESERVATION_TTL_SECONDS = 900


class BudgetTracker:
    def __init__(
        self,
        store: EngineStore,
        resolver: EntitlementResolver,
        *,
        reservation_ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.reservation_ttl = timedelta(seconds=reservation_ttl_seconds)
        self._new_id = id_factory or (lambda: uuid4().hex)

    def _denied(self, tenant_id: str, provider: str, tokens: int, reason: str, remaining: Optional[int] = None) -> ReserveResult:
        log = logger.error if reason == BudgetDenial.STORAGE_UNAVAILABLE else logger.warning
        log(
            "[budget] DENIED",
            extra={"tenant_id": tenant_id, "provider": provider, "tokens": tokens, "reason": reason, "remaining_tokens": remaining},
        )
        return ReserveResult(
            granted=False,
            tenant_id=tenant_id,
            provider=provider,
            tokens=tokens,
            reason=reason,
            remaining_tokens=remaining,
        )

    def reserve(
        self,
        tenant_id: str,
        provider: str,
        estimated_tokens: int,
        estimated_cost: float = 0.0,
        *,
        now=None,
    ) -> ReserveResult:
        if estimated_tokens <= 0:
            raise ValidationError("estimated_tokens must be a positive integer")
        if estimated_cost < 0:
            raise ValidationError("estimated_cost cannot be negative")
        stamp = normalize_now(now)

        try:
            caps = self.resolver.resolve_ai_budget(tenant_id, provider)
        except StorageUnavailable:
            return self._denied(tenant_id, provider, estimated_tokens, BudgetDenial.STORAGE_UNAVAILABLE)
        store_caps = BudgetCaps(
            provider_tokens=caps.provider_tokens,
            provider_cost=caps.provider_cost,
            global_tokens=caps.global_tokens,
        )

        window = window_for(Cadence.MONTHLY, stamp)
        reservation = Reservation(
            reservation_id=self._new_id(),
            tenant_id=tenant_id,
            provider=provider,
            period_id=window.period_id,
            tokens=estimated_tokens,
            estimated_cost=estimated_cost,
            created_at=stamp,
            expires_at=stamp + self.reservation_ttl,
        )
        try:
            try:
                outcome = self.store.reserve_budget(reservation, store_caps, window)
            except PeriodClosedError:
                window = next_window(window)
                reservation = reservation.model_copy(update={"period_id": window.period_id})
                outcome = self.store.reserve_budget(reservation, store_caps, window)
        except StorageUnavailable:
            return self._denied(tenant_id, provider, estimated_tokens, BudgetDenial.STORAGE_UNAVAILABLE)

        if not outcome.granted:
            return self._denied(tenant_id, provider, estimated_tokens, outcome.reason, outcome.remaining_tokens)

        logger.info(
            "[budget] RESERVED",
            extra={
                "tenant_id": tenant_id,
                "provider": provider,
                "reservation_id": reservation.reservation_id,
                "tokens": estimated_tokens,
                "remaining_tokens": outcome.remaining_tokens,
            },
        )
        return ReserveResult(
            granted=True,
            tenant_id=tenant_id,
            provider=provider,
            tokens=estimated_tokens,
            reservation_id=reservation.reservation_id,
            expires_at=reservation.expires_at,
            period_id=reservation.period_id,
            remaining_tokens=outcome.remaining_tokens,
        )

    def confirm(self, reservation_id: str, actual_tokens: int, actual_cost: float = 0.0, *, now=None) -> SettlementResult:
        """
        Book the true consumption and release the hold.

        Usage above the reservation is still booked (it happened) and logged
        as an overrun. Storage faults raise StorageUnavailable so the caller
        can retry; the reservation stays pending until then or until it expires.
        """
        if actual_tokens < 0 or actual_cost < 0:
            raise ValidationError("actual usage cannot be negative")
        outcome = self.store.settle_reservation(
            reservation_id, ReservationStatus.CONFIRMED, actual_tokens, actual_cost, normalize_now(now)
        )
        if not outcome.ok:
            logger.warning(
                "[budget] CONFIRM_REJECTED",
                extra={"reservation_id": reservation_id, "error_code": outcome.error},
            )
        elif outcome.overrun_tokens:
            logger.warning(
                "[budget] OVERRUN",
                extra={"reservation_id": reservation_id, "overrun_tokens": outcome.overrun_tokens},
            )
        else:
            logger.info(
                "[budget] CONFIRMED",
                extra={"reservation_id": reservation_id, "refunded_tokens": outcome.refunded_tokens},
            )
        return SettlementResult(
            ok=outcome.ok,
            reservation_id=reservation_id,
            status=outcome.status,
            error=outcome.error,
            refunded_tokens=outcome.refunded_tokens,
            overrun_tokens=outcome.overrun_tokens,
        )

    def cancel(self, reservation_id: str, *, now=None) -> SettlementResult:
        """Release the whole hold. Fails open: on a storage fault the expiry sweep reclaims it."""
        try:
            outcome = self.store.settle_reservation(
                reservation_id, ReservationStatus.CANCELLED, 0, 0.0, normalize_now(now)
            )
        except StorageUnavailable:
            logger.warning("[budget] CANCEL_DEFERRED storage unavailable", extra={"reservation_id": reservation_id})
            return SettlementResult(ok=True, reservation_id=reservation_id, deferred=True)

        if not outcome.ok:
            logger.warning(
                "[budget] CANCEL_REJECTED",
                extra={"reservation_id": reservation_id, "error_code": outcome.error},
            )
        else:
            logger.info("[budget] CANCELLED", extra={"reservation_id": reservation_id})
        return SettlementResult(
            ok=outcome.ok,
            reservation_id=reservation_id,
            status=outcome.status,
            error=outcome.error,
            refunded_tokens=outcome.refunded_tokens,
        )

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        return self.store.get_reservation(reservation_id)

    def get_budget(self, tenant_id: str, provider: str, *, now=None) -> BudgetState:
        """Current-period state; a provider never reserved against reads as zero usage."""
        caps = self.resolver.resolve_ai_budget(tenant_id, provider)
        window = window_for(Cadence.MONTHLY, normalize_now(now))
        state = self.store.get_budget(tenant_id, provider, window.period_id)
        if state is None:
            state = BudgetState(
                tenant_id=tenant_id,
                provider=provider,
                period_id=window.period_id,
                period_start=window.start,
                period_end=window.end,
            )
        return state.model_copy(update={"cap_tokens": caps.provider_tokens, "cap_cost": caps.provider_cost})
