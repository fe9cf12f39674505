from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from itam.domain.permissions import PERM_PLATFORM_TENANT_MANAGE

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
JWT_ISSUER = os.getenv("JWT_ISSUER", "itam-platform")

# Operator tokens are bound to this pseudo tenant, which owns no rows.
PLATFORM_TENANT_ID = "platform"
REQUIRED_CLAIMS = ["exp", "iat", "iss", "sub", "tenant_id"]


def create_access_token(
    *,
    user_id: str,
    tenant_id: str,
    is_admin: bool = False,
    permissions: list[str] | None = None,
    expires_minutes: int | None = None,
) -> str:
    now = datetime.now(UTC)
    expire_delta = timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)
    payload: dict[str, Any] = {
        "iss": JWT_ISSUER,
        "sub": user_id,
        "tenant_id": tenant_id,
        "is_admin": is_admin,
        "permissions": permissions or [],
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def create_platform_token(operator: str, expires_minutes: int | None = None) -> str:
    """Token for tier and activation changes; never issued by tenant login."""
    return create_access_token(
        user_id=f"platform:{operator}",
        tenant_id=PLATFORM_TENANT_ID,
        permissions=[PERM_PLATFORM_TENANT_MANAGE],
        expires_minutes=expires_minutes,
    )


def decode_access_token(token: str) -> dict[str, Any]:
    decoded = jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[JWT_ALGORITHM],
        issuer=JWT_ISSUER,
        options={"require": REQUIRED_CLAIMS},
    )
    if not isinstance(decoded, dict):
        raise ValueError("Invalid token payload")
    return decoded
