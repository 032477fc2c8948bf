"""
Tenant Health Scoring Engine

Pure, deterministic computation of a tenant health score from usage ratios,
engagement metrics and churn signals supplied by the caller.
No store access, no randomness, no side effects. Advisory only: never
consulted for entitlement decisions.

Scoring:
- usage (40%): mean consumed/limit over limited resources, full marks at 60%
  average utilisation; neutral 50 when the tenant has no limited resources
- adoption (30%): half active-user ratio, half feature adoption
- support (20%): resolved/opened tickets, 100 with no tickets
- payment (10%): steps down with days overdue
- final score rounded and clamped to 0..100, then bucketed
"""

from typing import List, Optional

from entitlement_engine.models.health import (
    HealthComponents,
    HealthInputs,
    HealthSnapshot,
    HealthStatus,
    HealthTrend,
)


class HealthScoringEngine:
    """Pure deterministic health scoring."""

    # Weights
    USAGE_WEIGHT = 0.4
    ADOPTION_WEIGHT = 0.3
    SUPPORT_WEIGHT = 0.2
    PAYMENT_WEIGHT = 0.1

    HEALTHY_UTILISATION = 0.6
    NEUTRAL_USAGE = 50.0
    TREND_DELTA = 10

    # (minimum score, status), checked in order
    STATUS_THRESHOLDS = (
        (90, HealthStatus.EXCELLENT),
        (75, HealthStatus.GOOD),
        (50, HealthStatus.FAIR),
        (25, HealthStatus.POOR),
    )

    @staticmethod
    def score(tenant_id: str, inputs: HealthInputs) -> HealthSnapshot:
        components = HealthComponents(
            usage=HealthScoringEngine._score_usage(list(inputs.usage_ratios.values())),
            adoption=HealthScoringEngine._score_adoption(
                inputs.engagement.active_user_ratio, inputs.engagement.feature_adoption
            ),
            support=HealthScoringEngine._score_support(
                inputs.churn.support_tickets_opened, inputs.churn.support_tickets_resolved
            ),
            payment=HealthScoringEngine._score_payment(inputs.churn.days_payment_overdue),
        )
        raw = (
            components.usage * HealthScoringEngine.USAGE_WEIGHT
            + components.adoption * HealthScoringEngine.ADOPTION_WEIGHT
            + components.support * HealthScoringEngine.SUPPORT_WEIGHT
            + components.payment * HealthScoringEngine.PAYMENT_WEIGHT
        )
        score = max(0, min(100, round(raw)))

        risks = HealthScoringEngine._risk_factors(inputs, components)
        return HealthSnapshot(
            tenant_id=tenant_id,
            score=score,
            status=HealthScoringEngine.status_for(score),
            components=components,
            trend=HealthScoringEngine._trend(score, inputs.previous_score),
            risk_factors=risks,
            recommended_actions=HealthScoringEngine._actions(inputs, components),
        )

    @staticmethod
    def status_for(score: int) -> HealthStatus:
        for minimum, status in HealthScoringEngine.STATUS_THRESHOLDS:
            if score >= minimum:
                return status
        return HealthStatus.CRITICAL

    @staticmethod
    def _score_usage(ratios: List[float]) -> float:
        if not ratios:
            return HealthScoringEngine.NEUTRAL_USAGE
        mean = sum(min(1.0, max(0.0, r)) for r in ratios) / len(ratios)
        return 100.0 * min(1.0, mean / HealthScoringEngine.HEALTHY_UTILISATION)

    @staticmethod
    def _score_adoption(active_user_ratio: float, feature_adoption: float) -> float:
        return 100.0 * (0.5 * active_user_ratio + 0.5 * feature_adoption)

    @staticmethod
    def _score_support(opened: int, resolved: int) -> float:
        if opened <= 0:
            return 100.0
        return 100.0 * min(1.0, resolved / opened)

    @staticmethod
    def _score_payment(days_overdue: int) -> float:
        if days_overdue <= 0:
            return 100.0
        if days_overdue <= 7:
            return 80.0
        if days_overdue <= 30:
            return 60.0
        if days_overdue <= 60:
            return 40.0
        return 0.0

    @staticmethod
    def _trend(score: int, previous: Optional[int]) -> HealthTrend:
        if previous is None:
            return HealthTrend.STABLE
        if score >= previous + HealthScoringEngine.TREND_DELTA:
            return HealthTrend.IMPROVING
        if score <= previous - HealthScoringEngine.TREND_DELTA:
            return HealthTrend.DECLINING
        return HealthTrend.STABLE

    @staticmethod
    def _risk_factors(inputs: HealthInputs, components: HealthComponents) -> List[str]:
        risks = []
        if inputs.usage_ratios and components.usage < 30:
            risks.append("low_usage")
        near_limit = sorted(k for k, r in inputs.usage_ratios.items() if r >= 0.9)
        if near_limit:
            risks.append("near_limit:" + ",".join(near_limit))
        if inputs.engagement.active_user_ratio < 0.3:
            risks.append("low_active_users")
        if inputs.engagement.feature_adoption < 0.3:
            risks.append("low_feature_adoption")
        if components.support < 50:
            risks.append("unresolved_support_tickets")
        if inputs.churn.days_payment_overdue > 0:
            risks.append("payment_overdue")
        days_idle = inputs.engagement.days_since_last_login
        if days_idle is not None and days_idle > 14:
            risks.append("inactive_login")
        return risks

    @staticmethod
    def _actions(inputs: HealthInputs, components: HealthComponents) -> List[str]:
        actions = []
        if inputs.usage_ratios and components.usage < 30:
            actions.append("schedule_onboarding_session")
        if any(r >= 0.9 for r in inputs.usage_ratios.values()):
            actions.append("offer_plan_upgrade")
        if inputs.engagement.feature_adoption < 0.3:
            actions.append("send_feature_tutorials")
        if components.support < 50:
            actions.append("escalate_support_backlog")
        if inputs.churn.days_payment_overdue > 30:
            actions.append("contact_billing")
        elif inputs.churn.days_payment_overdue > 0:
            actions.append("send_payment_reminder")
        return actions
