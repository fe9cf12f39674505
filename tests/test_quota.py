from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session

from itam.domain.errors import (
    ConflictError,
    InvalidInputError,
    QuotaDeniedError,
    QuotaExceededError,
    TenantInactiveError,
)
from itam.domain.models import AssetCreate, DeviceType, Tenant, UserCreate, now_utc
from itam.domain.quotas import QuotaAllowed, QuotaDenied, ResourceKind, SubscriptionTier
from itam.services.asset_service import AssetService
from itam.services.quota_service import DENY_QUOTA_EXCEEDED, QuotaService
from itam.services.tenant_service import TenantService
from itam.services.user_service import UserService


def _tenant(engine: Engine, tenant_id: str) -> Tenant:
    with Session(engine) as session:
        tenant = session.get(Tenant, tenant_id)
        assert tenant is not None
        return tenant


def test_free_tenant_asset_quota_stops_at_fifty(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-assets")
    assets = AssetService()
    for _ in range(50):
        assets.create_asset(context, AssetCreate(device_type=DeviceType.LAPTOP))

    with pytest.raises(QuotaExceededError) as exc_info:
        assets.create_asset(context, AssetCreate(device_type=DeviceType.LAPTOP))
    assert exc_info.value.resource_kind == ResourceKind.ASSET.value
    assert exc_info.value.limit == 50
    assert exc_info.value.attempted == 51

    assert _tenant(test_engine, context.tenant_id).current_asset_count == 50
    assert len(assets.list_assets(context)) == 50


def test_try_reserve_reports_decisions_without_raising(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-decisions")
    quota = QuotaService()

    allowed = quota.try_reserve(context.tenant_id, ResourceKind.STORAGE_BYTES, 1024)
    assert allowed == QuotaAllowed(resource_kind=ResourceKind.STORAGE_BYTES, delta=1024)

    denied = quota.try_reserve(context.tenant_id, ResourceKind.USER, 5)
    assert isinstance(denied, QuotaDenied)
    assert denied.reason == DENY_QUOTA_EXCEEDED
    assert (denied.limit, denied.attempted) == (5, 6)

    tenant = _tenant(test_engine, context.tenant_id)
    assert tenant.current_storage_bytes == 1024
    assert tenant.current_user_count == 1


def test_release_is_floored_at_zero(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-floor")
    quota = QuotaService()
    quota.reserve(context.tenant_id, ResourceKind.STORAGE_BYTES, 100)
    quota.release(context.tenant_id, ResourceKind.STORAGE_BYTES, 500)
    assert _tenant(test_engine, context.tenant_id).current_storage_bytes == 0

    with pytest.raises(InvalidInputError):
        quota.release(context.tenant_id, ResourceKind.STORAGE_BYTES, -1)
    with pytest.raises(InvalidInputError):
        quota.try_reserve(context.tenant_id, ResourceKind.ASSET, -1)


def test_inactive_and_expired_tenants_are_denied(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-inactive")
    tenants = TenantService()
    quota = QuotaService()

    tenants.set_active(context, False)
    with pytest.raises(TenantInactiveError):
        quota.reserve(context.tenant_id, ResourceKind.ASSET, 1)
    tenants.set_active(context, True)

    with Session(test_engine) as session:
        tenant = session.get(Tenant, context.tenant_id)
        assert tenant is not None
        tenant.subscription_end_at = now_utc() - timedelta(days=1)
        session.add(tenant)
        session.commit()

    decision = quota.try_reserve(context.tenant_id, ResourceKind.ASSET, 1)
    assert isinstance(decision, QuotaDenied)
    assert decision.reason == "subscription expired"
    with pytest.raises(QuotaDeniedError):
        quota.reserve(context.tenant_id, ResourceKind.ASSET, 1)
    assert _tenant(test_engine, context.tenant_id).current_asset_count == 0


def test_reservation_released_when_body_fails(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-rollback")
    quota = QuotaService()

    with pytest.raises(RuntimeError), quota.reservation(context.tenant_id, ResourceKind.ASSET, 3):
        assert _tenant(test_engine, context.tenant_id).current_asset_count == 3
        raise RuntimeError("persist failed")

    assert _tenant(test_engine, context.tenant_id).current_asset_count == 0


def test_user_counter_tracks_creates_and_deletes(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-users")
    users = UserService()
    created = [
        users.create_user(context, UserCreate(username=f"member-{index}", password="pw", full_name=f"Member {index}"))
        for index in range(4)
    ]
    with pytest.raises(QuotaExceededError):
        users.create_user(context, UserCreate(username="one-too-many", password="pw", full_name="Extra"))

    assert _tenant(test_engine, context.tenant_id).current_user_count == 5

    users.delete_user(context, created[0].id)
    assert _tenant(test_engine, context.tenant_id).current_user_count == 4
    with pytest.raises(ConflictError):
        users.create_user(context, UserCreate(username="member-1", password="pw", full_name="Dup"))
    assert _tenant(test_engine, context.tenant_id).current_user_count == 4
    users.create_user(context, UserCreate(username="replacement", password="pw", full_name="Replacement"))
    assert _tenant(test_engine, context.tenant_id).current_user_count == 5


def test_tier_change_recomputes_limits_and_refuses_downgrade_below_usage(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-tier", SubscriptionTier.PRO)
    tenants = TenantService()
    users = UserService()
    for index in range(5):
        users.create_user(context, UserCreate(username=f"u{index}", password="pw", full_name=f"U {index}"))

    with pytest.raises(QuotaExceededError) as exc_info:
        tenants.change_tier(context, SubscriptionTier.FREE)
    assert exc_info.value.resource_kind == ResourceKind.USER.value
    assert exc_info.value.limit == 5
    assert _tenant(test_engine, context.tenant_id).subscription_tier == SubscriptionTier.PRO

    upgraded = tenants.change_tier(context, SubscriptionTier.ENTERPRISE)
    assert upgraded.max_assets == 10000
    assert upgraded.max_users == 500


def test_reconcile_usage_repairs_drift(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-reconcile")
    AssetService().create_asset(context, AssetCreate(device_type=DeviceType.PHONE))
    with Session(test_engine) as session:
        tenant = session.get(Tenant, context.tenant_id)
        assert tenant is not None
        tenant.current_asset_count = 17
        tenant.current_storage_bytes = 999
        session.add(tenant)
        session.commit()

    tenant = TenantService().reconcile_usage(context.tenant_id)
    assert tenant.current_asset_count == 1
    assert tenant.current_user_count == 1
    assert tenant.current_storage_bytes == 0


def test_tenant_delete_refused_while_entities_exist(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("quota-delete")
    with pytest.raises(ConflictError):
        TenantService().delete_tenant(context.tenant_id)
