from __future__ import annotations

from datetime import date, timedelta

import pytest
from sqlalchemy.engine import Engine

from itam.domain.derived import WarrantyAlertType
from itam.domain.errors import AlreadyAcknowledgedError, NotFoundError
from itam.domain.models import AssetCreate, AssetUpdate, DeviceType, MaintenanceCreate, NotificationType, UserCreate
from itam.infra.tenant import TenantContext
from itam.services.asset_service import AssetService
from itam.services.assignment_service import AssignmentService
from itam.services.maintenance_service import MaintenanceService
from itam.services.notification_service import NotificationService
from itam.services.tenant_service import TenantService
from itam.services.user_service import UserService
from itam.services.warranty_service import WarrantyService

AS_OF = date(2026, 6, 1)


def _asset_with_warranty(context: TenantContext, days_from_as_of: int) -> str:
    asset = AssetService().create_asset(
        context,
        AssetCreate(
            device_type=DeviceType.MONITOR,
            manufacturer="Dell",
            model="U2723QE",
            warranty_start_date=AS_OF - timedelta(days=1000),
            warranty_end_date=AS_OF + timedelta(days=days_from_as_of),
        ),
    )
    return asset.id


def test_scan_classifies_expired_and_expiring_assets(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("warranty")
    expired = _asset_with_warranty(context, -10)
    expiring = _asset_with_warranty(context, 30)
    _asset_with_warranty(context, 200)
    AssetService().create_asset(context, AssetCreate(device_type=DeviceType.PHONE))
    service = WarrantyService()

    result = service.scan(context.tenant_id, today=AS_OF)
    assert result.scanned_assets == 3
    assert result.created_alerts == 2
    assert result.skipped_alerts == 0

    alerts = {alert.asset_id: alert for alert in service.list_alerts(context)}
    assert set(alerts) == {expired, expiring}
    assert alerts[expired].alert_type == WarrantyAlertType.EXPIRED
    assert alerts[expired].days_remaining == -10
    assert alerts[expiring].alert_type == WarrantyAlertType.EXPIRING
    assert alerts[expiring].days_remaining == 30


def test_scan_boundaries(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("boundaries")
    today_end = _asset_with_warranty(context, 0)
    edge = _asset_with_warranty(context, 90)
    _asset_with_warranty(context, 91)
    service = WarrantyService()

    service.scan(context.tenant_id, today=AS_OF)
    alerts = {alert.asset_id: alert.alert_type for alert in service.list_alerts(context)}
    assert alerts == {today_end: WarrantyAlertType.EXPIRING, edge: WarrantyAlertType.EXPIRING}


def test_repeated_scan_does_not_duplicate_alerts(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("idempotent")
    asset_id = _asset_with_warranty(context, 30)
    service = WarrantyService()

    assert service.scan(context.tenant_id, today=AS_OF).created_alerts == 1
    again = service.scan(context.tenant_id, today=AS_OF + timedelta(days=1))
    assert again.created_alerts == 0
    assert again.skipped_alerts == 1
    assert len(service.list_alerts(context, asset_id=asset_id)) == 1

    AssetService().update_asset(context, asset_id, AssetUpdate(warranty_end_date=AS_OF + timedelta(days=60)))
    extended = service.scan(context.tenant_id, today=AS_OF)
    assert extended.created_alerts == 1
    assert len(service.list_alerts(context, asset_id=asset_id)) == 2


def test_acknowledge_is_one_way(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("acknowledge")
    _asset_with_warranty(context, -1)
    service = WarrantyService()
    service.scan(context.tenant_id, today=AS_OF)
    (alert,) = service.list_alerts(context)

    acknowledged = service.acknowledge(context, alert.id)
    assert acknowledged.acknowledged_at is not None
    assert acknowledged.acknowledged_by_user_id == context.actor_id
    with pytest.raises(AlreadyAcknowledgedError):
        service.acknowledge(context, alert.id)

    assert service.list_alerts(context, acknowledged=False) == []
    assert [item.id for item in service.list_alerts(context, acknowledged=True)] == [alert.id]
    summary = service.summary(context)
    assert summary.unacknowledged_count == 0
    assert summary.total_count == 1


def test_alerts_notify_assigned_user_and_admins(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("recipients")
    holder = UserService().create_user(context, UserCreate(username="gina", password="pw", full_name="Gina"))
    assigned = _asset_with_warranty(context, -5)
    _asset_with_warranty(context, 45)
    AssignmentService().assign(context, assigned, holder.id)

    result = WarrantyService().scan(context.tenant_id, today=AS_OF)
    assert result.created_alerts == 2
    assert result.notifications == 3

    notifications = NotificationService()
    holder_context = TenantContext(tenant_id=context.tenant_id, actor_id=holder.id)
    (holder_note,) = notifications.list_for_user(holder_context)
    assert holder_note.type == NotificationType.ERROR
    assert holder_note.related_entity_type == "warranty_alert"
    assert holder_note.link == f"/assets/{assigned}"
    assert "expired 5 days ago" in holder_note.message

    admin_notes = notifications.list_for_user(context)
    assert {note.type for note in admin_notes} == {NotificationType.ERROR, NotificationType.WARNING}
    assert notifications.counts(context).unread_count == 2


def test_alerts_reach_holder_while_asset_is_in_maintenance(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("repair-holder")
    holder = UserService().create_user(context, UserCreate(username="hal", password="pw", full_name="Hal"))
    asset_id = _asset_with_warranty(context, 20)
    AssignmentService().assign(context, asset_id, holder.id)
    MaintenanceService().create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="screen flicker"))
    assert AssetService().get_asset(context, asset_id).assigned_to_user_id is None

    result = WarrantyService().scan(context.tenant_id, today=AS_OF)
    assert result.created_alerts == 1
    assert result.notifications == 2

    holder_context = TenantContext(tenant_id=context.tenant_id, actor_id=holder.id)
    (holder_note,) = NotificationService().list_for_user(holder_context)
    assert holder_note.type == NotificationType.WARNING
    assert holder_note.link == f"/assets/{asset_id}"


def test_retired_assets_and_inactive_tenants_are_skipped(test_engine: Engine, make_tenant) -> None:
    active = make_tenant("scan-active")
    paused = make_tenant("scan-paused")
    retired = _asset_with_warranty(active, -30)
    _asset_with_warranty(active, 10)
    _asset_with_warranty(paused, 10)
    AssetService().retire_asset(active, retired)
    TenantService().set_active(paused, False)

    result = WarrantyService().scan(today=AS_OF)
    assert result.scanned_assets == 1
    assert result.created_alerts == 1
    assert WarrantyService().list_alerts(paused) == []


def test_scan_of_unknown_tenant_is_not_found(test_engine: Engine) -> None:
    with pytest.raises(NotFoundError):
        WarrantyService().scan("missing-tenant", today=AS_OF)
