"""
entitlement_engine/models/resources.py

Catalog of gated resources and boolean features.

Every limit key a plan may carry is listed here with its reset cadence.
Standing resources (seats, stored entities) never reset; monthly resources
start from zero each calendar month.
"""

from enum import Enum
from typing import Dict, FrozenSet


UNLIMITED = -1


class Cadence(str, Enum):
    STANDING = "standing"
    MONTHLY = "monthly"


class TenantCategory(str, Enum):
    INDIVIDUAL = "individual"
    BUSINESS = "business"


RESOURCE_CADENCE: Dict[str, Cadence] = {
    # seats per role
    "owner": Cadence.STANDING,
    "admin": Cadence.STANDING,
    "trainer": Cadence.STANDING,
    "member": Cadence.STANDING,
    "nutritionist": Cadence.STANDING,
    # stored entities
    "clients": Cadence.STANDING,
    "workouts": Cadence.STANDING,
    "exercises": Cadence.STANDING,
    "crm_contacts": Cadence.STANDING,
    "integrations": Cadence.STANDING,
    "webhooks": Cadence.STANDING,
    "storage_bytes": Cadence.STANDING,
    # metered per month
    "api_calls": Cadence.MONTHLY,
    "reports": Cadence.MONTHLY,
    "backups": Cadence.MONTHLY,
    "upload_bytes": Cadence.MONTHLY,
}

# Derived from a plan's upload limits rather than its limits map
STORAGE_RESOURCE = "storage_bytes"
UPLOAD_RESOURCE = "upload_bytes"

ROLE_RESOURCES: FrozenSet[str] = frozenset({"owner", "admin", "trainer", "member", "nutritionist"})

KNOWN_FEATURES: FrozenSet[str] = frozenset({
    "ai_chat",
    "bioimpedance",
    "reports",
    "whatsapp_integration",
    "stripe_integration",
    "advanced_analytics",
    "custom_branding",
    "custom_domain",
    "api_access",
    "webhooks",
    "multi_language",
    "white_label",
    "ads_enabled",
})

# Endpoint classes understood by the rate limiter
ENDPOINT_CLASSES: FrozenSet[str] = frozenset({"api", "webhook"})

# Budget row that carries the tenant's cross-provider cap
GLOBAL_PROVIDER = "*"


def cadence_for(resource_key: str) -> Cadence:
    return RESOURCE_CADENCE.get(resource_key, Cadence.MONTHLY)


def is_known_resource(resource_key: str) -> bool:
    return resource_key in RESOURCE_CADENCE
