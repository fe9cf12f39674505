from __future__ import annotations

from typing import Any

PERM_WILDCARD = "*"
PERM_IDENTITY_READ = "identity.read"
PERM_IDENTITY_WRITE = "identity.write"
PERM_ASSET_READ = "asset.read"
PERM_ASSET_WRITE = "asset.write"
PERM_MAINTENANCE_READ = "maintenance.read"
PERM_MAINTENANCE_WRITE = "maintenance.write"
PERM_WARRANTY_READ = "warranty.read"
PERM_WARRANTY_WRITE = "warranty.write"
PERM_PLATFORM_TENANT_MANAGE = "platform.tenant.manage"

# Granted only explicitly to platform operator tokens; the tenant wildcard does not cover them.
PLATFORM_PERMISSION_NAMES = frozenset({PERM_PLATFORM_TENANT_MANAGE})

# Non-admin accounts work with assets and maintenance but do not manage the tenant.
MEMBER_PERMISSION_NAMES = [
    PERM_IDENTITY_READ,
    PERM_ASSET_READ,
    PERM_ASSET_WRITE,
    PERM_MAINTENANCE_READ,
    PERM_MAINTENANCE_WRITE,
    PERM_WARRANTY_READ,
]


def permissions_for(is_admin: bool) -> list[str]:
    if is_admin:
        return [PERM_WILDCARD]
    return list(MEMBER_PERMISSION_NAMES)


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    if permission in permissions:
        return True
    return permission not in PLATFORM_PERMISSION_NAMES and PERM_WILDCARD in permissions
