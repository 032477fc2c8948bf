"""
entitlement_engine/models/health.py

Tenant health inputs and snapshot (advisory churn triage, never authoritative).
"""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class HealthStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"


class HealthTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class EngagementMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_user_ratio: float = 0.0
    feature_adoption: float = 0.0
    days_since_last_login: Optional[int] = None

    @field_validator("active_user_ratio", "feature_adoption")
    @classmethod
    def _ratio(cls, v: float, info) -> float:
        if v < 0 or v > 1:
            raise ValueError(f"{info.field_name} must be within [0, 1]")
        return v


class ChurnSignals(BaseModel):
    model_config = ConfigDict(frozen=True)

    support_tickets_opened: int = 0
    support_tickets_resolved: int = 0
    days_payment_overdue: int = 0


class HealthInputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    # consumed/limit per limited resource; unlimited resources are never present
    usage_ratios: Dict[str, float] = Field(default_factory=dict)
    engagement: EngagementMetrics = Field(default_factory=EngagementMetrics)
    churn: ChurnSignals = Field(default_factory=ChurnSignals)
    previous_score: Optional[int] = None


class HealthComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    usage: float
    adoption: float
    support: float
    payment: float


class HealthSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    score: int
    status: HealthStatus
    components: HealthComponents
    trend: HealthTrend
    risk_factors: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)
