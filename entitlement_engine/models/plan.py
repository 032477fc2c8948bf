"""
entitlement_engine/models/plan.py

Plan definitions (base and custom).

A plan is an immutable value validated once at construction. Upserting a
plan stores a new version; nothing mutates a stored plan in place.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from entitlement_engine.models.resources import (
    KNOWN_FEATURES,
    RESOURCE_CADENCE,
    STORAGE_RESOURCE,
    UNLIMITED,
    UPLOAD_RESOURCE,
    TenantCategory,
)


def _check_limit(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer")
    if value != UNLIMITED and value < 1:
        raise ValueError(f"{name} must be a positive integer or {UNLIMITED} (unlimited)")
    return value


class ProviderBudget(BaseModel):
    """Monthly cap for one AI provider. cost_budget is in the plan's currency."""
    model_config = ConfigDict(frozen=True)

    monthly_tokens: int
    cost_budget: float = -1.0

    @field_validator("monthly_tokens")
    @classmethod
    def _tokens(cls, v: int) -> int:
        return _check_limit("monthly_tokens", v)

    @field_validator("cost_budget")
    @classmethod
    def _cost(cls, v: float) -> float:
        if v != UNLIMITED and v < 0:
            raise ValueError("cost_budget must be non-negative or -1 (unlimited)")
        return v


class AiLimits(BaseModel):
    """Provider caps plus the cross-provider cap. A None cap on a custom plan inherits."""
    model_config = ConfigDict(frozen=True)

    global_monthly_tokens: Optional[int] = None
    providers: Dict[str, ProviderBudget] = Field(default_factory=dict)

    @field_validator("global_monthly_tokens")
    @classmethod
    def _global(cls, v: Optional[int]) -> Optional[int]:
        return v if v is None else _check_limit("global_monthly_tokens", v)


class UploadLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_file_size_bytes: int
    total_storage_bytes: int
    monthly_upload_quota_bytes: int
    # None on a custom plan inherits the base plan's list
    allowed_file_types: Optional[FrozenSet[str]] = None

    @field_validator("max_file_size_bytes", "total_storage_bytes", "monthly_upload_quota_bytes")
    @classmethod
    def _sizes(cls, v: int, info) -> int:
        return _check_limit(info.field_name, v)

    def allows_type(self, file_type: str) -> bool:
        return file_type.lower().lstrip(".") in (self.allowed_file_types or frozenset())


class RateLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    requests_per_minute: int
    webhook_calls_per_minute: int

    @field_validator("requests_per_minute", "webhook_calls_per_minute")
    @classmethod
    def _rates(cls, v: int, info) -> int:
        return _check_limit(info.field_name, v)


class PlanDefinition(BaseModel):
    """
    Base or custom plan.

    Sections left as None (and limit/feature keys left out) on a custom plan
    inherit from the tenant's base plan. Base plans carry every section.
    """
    model_config = ConfigDict(frozen=True)

    plan_key: str
    category: TenantCategory
    display_name: str
    is_custom: bool = False
    tenant_id: Optional[str] = None
    version: int = 1
    limits: Dict[str, int] = Field(default_factory=dict)
    ai_limits: Optional[AiLimits] = None
    upload_limits: Optional[UploadLimits] = None
    feature_flags: Dict[str, bool] = Field(default_factory=dict)
    rate_limits: Optional[RateLimits] = None
    price_monthly: float = 0.0
    extra_slot_price: float = 0.0
    updated_at: Optional[datetime] = None

    @field_validator("plan_key")
    @classmethod
    def _key(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("plan_key is required")
        return v

    @field_validator("limits")
    @classmethod
    def _limits(cls, v: Dict[str, int]) -> Dict[str, int]:
        for key, value in v.items():
            if key not in RESOURCE_CADENCE:
                raise ValueError(f"unknown resource key in limits: {key}")
            if key in (STORAGE_RESOURCE, UPLOAD_RESOURCE):
                raise ValueError(f"{key} is derived from upload_limits")
            _check_limit(key, value)
        return v

    @field_validator("feature_flags")
    @classmethod
    def _features(cls, v: Dict[str, bool]) -> Dict[str, bool]:
        unknown = sorted(set(v) - KNOWN_FEATURES)
        if unknown:
            raise ValueError(f"unknown feature keys: {', '.join(unknown)}")
        return v

    @field_validator("price_monthly", "extra_slot_price")
    @classmethod
    def _price(cls, v: float, info) -> float:
        if v < 0:
            raise ValueError(f"{info.field_name} must be non-negative")
        return v

    @model_validator(mode="after")
    def _custom_ownership(self) -> "PlanDefinition":
        if self.is_custom and not self.tenant_id:
            raise ValueError("a custom plan must name its tenant_id")
        if not self.is_custom:
            if self.tenant_id:
                raise ValueError("a base plan cannot belong to a tenant")
            missing = [
                name for name in ("ai_limits", "upload_limits", "rate_limits")
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"base plan is missing sections: {', '.join(missing)}")
            # nothing below a base plan to inherit from
            if self.ai_limits.global_monthly_tokens is None:
                raise ValueError("base plan must set ai_limits.global_monthly_tokens")
            if self.upload_limits.allowed_file_types is None:
                raise ValueError("base plan must set upload_limits.allowed_file_types")
        return self

    def limit_for(self, resource_key: str) -> Optional[int]:
        """Limit this plan states for a resource, or None when it is silent."""
        if resource_key == STORAGE_RESOURCE:
            return self.upload_limits.total_storage_bytes if self.upload_limits else None
        if resource_key == UPLOAD_RESOURCE:
            return self.upload_limits.monthly_upload_quota_bytes if self.upload_limits else None
        return self.limits.get(resource_key)

    def limited_keys(self) -> FrozenSet[str]:
        keys = set(self.limits)
        if self.upload_limits is not None:
            keys.update({STORAGE_RESOURCE, UPLOAD_RESOURCE})
        return frozenset(keys)
