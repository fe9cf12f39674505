from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from itam.api.deps import Context, raise_http_error, require_perm
from itam.domain.errors import DomainError
from itam.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    TenantActivationUpdate,
    TenantCreate,
    TenantRead,
    TenantTierUpdate,
    TenantUsageRead,
    TokenResponse,
    UserCreate,
    UserRead,
)
from itam.domain.permissions import PERM_IDENTITY_READ, PERM_IDENTITY_WRITE, PERM_PLATFORM_TENANT_MANAGE
from itam.infra.audit import set_audit_context
from itam.infra.auth import create_access_token
from itam.infra.tenant import TenantContext
from itam.services.tenant_service import TenantService
from itam.services.user_service import UserService

router = APIRouter()


def get_tenant_service() -> TenantService:
    return TenantService()


def get_user_service() -> UserService:
    return UserService()


Tenants = Annotated[TenantService, Depends(get_tenant_service)]
Users = Annotated[UserService, Depends(get_user_service)]


def _ensure_own_tenant(context: Context, tenant_id: str) -> None:
    if context.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="tenant not found")


@router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, tenants: Tenants) -> TenantRead:
    try:
        return TenantRead.model_validate(tenants.create_tenant(payload))
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "/tenants/{tenant_id}",
    response_model=TenantRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def get_tenant(tenant_id: str, context: Context, tenants: Tenants) -> TenantRead:
    _ensure_own_tenant(context, tenant_id)
    try:
        return TenantRead.model_validate(tenants.get_tenant(tenant_id))
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "/tenants/{tenant_id}/usage",
    response_model=TenantUsageRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def get_tenant_usage(tenant_id: str, context: Context, tenants: Tenants) -> TenantUsageRead:
    _ensure_own_tenant(context, tenant_id)
    try:
        return tenants.get_usage(context)
    except DomainError as exc:
        raise_http_error(exc)


PlatformClaims = Annotated[dict[str, Any], Depends(require_perm(PERM_PLATFORM_TENANT_MANAGE))]


def _operator_context(claims: dict[str, Any], tenant_id: str) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, actor_id=str(claims["sub"]), is_admin=True)


@router.put("/tenants/{tenant_id}/tier", response_model=TenantRead)
def change_tenant_tier(
    tenant_id: str,
    payload: TenantTierUpdate,
    request: Request,
    claims: PlatformClaims,
    tenants: Tenants,
) -> TenantRead:
    set_audit_context(
        request,
        action="tenant.tier.change",
        resource=f"tenant:{tenant_id}",
        detail={"what": {"tenant_id": tenant_id, "tier": payload.subscription_tier.value}},
    )
    try:
        row = tenants.change_tier(_operator_context(claims, tenant_id), payload.subscription_tier)
        return TenantRead.model_validate(row)
    except DomainError as exc:
        raise_http_error(exc)


@router.put("/tenants/{tenant_id}/activation", response_model=TenantRead)
def set_tenant_activation(
    tenant_id: str,
    payload: TenantActivationUpdate,
    request: Request,
    claims: PlatformClaims,
    tenants: Tenants,
) -> TenantRead:
    set_audit_context(
        request,
        action="tenant.activation",
        resource=f"tenant:{tenant_id}",
        detail={"what": {"tenant_id": tenant_id, "is_active": payload.is_active}},
    )
    try:
        row = tenants.set_active(_operator_context(claims, tenant_id), payload.is_active)
        return TenantRead.model_validate(row)
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/tenants/{tenant_id}/reconcile-usage",
    response_model=TenantUsageRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def reconcile_tenant_usage(tenant_id: str, context: Context, tenants: Tenants) -> TenantUsageRead:
    _ensure_own_tenant(context, tenant_id)
    try:
        tenants.reconcile_usage(tenant_id)
        return tenants.get_usage(context)
    except DomainError as exc:
        raise_http_error(exc)


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, users: Users) -> UserRead:
    try:
        return UserRead.model_validate(users.bootstrap_admin(payload))
    except DomainError as exc:
        raise_http_error(exc)


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, users: Users) -> TokenResponse:
    try:
        user, permissions = users.dev_login(payload.tenant_id, payload.username, payload.password)
    except DomainError as exc:
        raise_http_error(exc)
    token = create_access_token(
        user_id=user.id,
        tenant_id=user.tenant_id,
        is_admin=user.is_admin,
        permissions=permissions,
    )
    return TokenResponse(access_token=token, permissions=permissions)


@router.post(
    "/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def create_user(payload: UserCreate, context: Context, users: Users) -> UserRead:
    try:
        return UserRead.model_validate(users.create_user(context, payload))
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "/users",
    response_model=list[UserRead],
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def list_users(context: Context, users: Users, active_only: bool = False) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in users.list_users(context, active_only=active_only)]


@router.get(
    "/users/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_READ))],
)
def get_user(user_id: str, context: Context, users: Users) -> UserRead:
    try:
        return UserRead.model_validate(users.get_user(context, user_id))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/users/{user_id}/deactivate",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def deactivate_user(user_id: str, context: Context, users: Users) -> UserRead:
    try:
        return UserRead.model_validate(users.set_active(context, user_id, False))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/users/{user_id}/activate",
    response_model=UserRead,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def activate_user(user_id: str, context: Context, users: Users) -> UserRead:
    try:
        return UserRead.model_validate(users.set_active(context, user_id, True))
    except DomainError as exc:
        raise_http_error(exc)


@router.delete(
    "/users/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_IDENTITY_WRITE))],
)
def delete_user(user_id: str, request: Request, context: Context, users: Users) -> Response:
    set_audit_context(request, action="identity.user.delete", detail={"what": {"user_id": user_id}})
    try:
        users.delete_user(context, user_id)
    except DomainError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
