from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

MIB = 1024 * 1024
GIB = 1024 * MIB


class SubscriptionTier(StrEnum):
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class ResourceKind(StrEnum):
    ASSET = "ASSET"
    USER = "USER"
    STORAGE_BYTES = "STORAGE_BYTES"


@dataclass(frozen=True)
class TierLimits:
    max_assets: int
    max_users: int
    max_storage_bytes: int

    def limit_for(self, kind: ResourceKind) -> int:
        if kind == ResourceKind.ASSET:
            return self.max_assets
        if kind == ResourceKind.USER:
            return self.max_users
        return self.max_storage_bytes


TIER_LIMITS: dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.FREE: TierLimits(max_assets=50, max_users=5, max_storage_bytes=100 * MIB),
    SubscriptionTier.PRO: TierLimits(max_assets=500, max_users=25, max_storage_bytes=1 * GIB),
    SubscriptionTier.ENTERPRISE: TierLimits(max_assets=10000, max_users=500, max_storage_bytes=50 * GIB),
}

# Tenant column names holding (current usage, limit) per resource kind.
USAGE_COLUMNS: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.ASSET: ("current_asset_count", "max_assets"),
    ResourceKind.USER: ("current_user_count", "max_users"),
    ResourceKind.STORAGE_BYTES: ("current_storage_bytes", "max_storage_bytes"),
}


def limits_for_tier(tier: SubscriptionTier | str) -> TierLimits:
    """Return the fixed limits for a tier; unknown tiers get FREE limits."""
    try:
        normalized = SubscriptionTier(str(tier).strip().upper())
    except ValueError:
        normalized = SubscriptionTier.FREE
    return TIER_LIMITS[normalized]


@dataclass(frozen=True)
class QuotaAllowed:
    resource_kind: ResourceKind
    delta: int


@dataclass(frozen=True)
class QuotaDenied:
    resource_kind: ResourceKind
    reason: str
    limit: int
    attempted: int


QuotaDecision = QuotaAllowed | QuotaDenied
