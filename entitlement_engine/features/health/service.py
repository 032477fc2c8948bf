"""
Tenant Health Service

Gathers usage ratios from the usage ledger, combines them with the
engagement and churn signals the caller supplies, then computes the health
snapshot deterministically.
"""

import logging
from typing import Optional

from entitlement_engine.features.health.scoring_engine import HealthScoringEngine
from entitlement_engine.features.usage.service import UsageLedger
from entitlement_engine.models.health import ChurnSignals, EngagementMetrics, HealthInputs, HealthSnapshot


logger = logging.getLogger("entitlements.health")


class TenantHealthService:
    def __init__(self, ledger: UsageLedger):
        self.ledger = ledger

    def assess(
        self,
        tenant_id: str,
        engagement: Optional[EngagementMetrics] = None,
        churn: Optional[ChurnSignals] = None,
        previous_score: Optional[int] = None,
        *,
        now=None,
    ) -> HealthSnapshot:
        """
        Score a tenant's health.

        Missing engagement/churn signals fall back to their defaults.
        Resources whose counters cannot be read are left out of the usage mean.
        """
        inputs = HealthInputs(
            usage_ratios=self.ledger.usage_ratios(tenant_id, now=now),
            engagement=engagement or EngagementMetrics(),
            churn=churn or ChurnSignals(),
            previous_score=previous_score,
        )
        snapshot = HealthScoringEngine.score(tenant_id, inputs)
        logger.info(
            "[health] scored",
            extra={"tenant_id": tenant_id, "score": snapshot.score, "status": snapshot.status.value},
        )
        return snapshot
