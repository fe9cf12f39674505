from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, NoReturn
from urllib.parse import quote

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from itam.domain.errors import (
    AuthenticationError,
    ConflictError,
    DomainError,
    InvalidInputError,
    NotFoundError,
    QuotaDeniedError,
    QuotaExceededError,
)
from itam.domain.permissions import has_permission
from itam.infra.auth import decode_access_token
from itam.infra.tenant import TenantContext
from itam.services.blob_storage import BlobStorageError

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    if not claims.get("tenant_id") or not claims.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    request.state.claims = claims
    return claims


def get_tenant_context(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> TenantContext:
    return TenantContext(
        tenant_id=str(claims["tenant_id"]),
        actor_id=str(claims["sub"]),
        is_admin=bool(claims.get("is_admin", False)),
    )


def require_perm(permission: str) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def _checker(
        claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    ) -> dict[str, Any]:
        if not has_permission(claims, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return claims

    return _checker


def raise_http_error(exc: DomainError | BlobStorageError) -> NoReturn:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, InvalidInputError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, QuotaExceededError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": str(exc),
                "resource_kind": exc.resource_kind,
                "limit": exc.limit,
                "attempted": exc.attempted,
            },
        ) from exc
    if isinstance(exc, QuotaDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthenticationError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, BlobStorageError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    raise exc


def content_disposition(filename: str) -> str:
    """Attachment header that survives quotes and non-ASCII in stored names."""
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


Context = Annotated[TenantContext, Depends(get_tenant_context)]
