from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session

from itam.domain.errors import ConflictError, InvalidInputError, InvalidStateTransitionError, NotFoundError
from itam.domain.models import (
    AssetCreate,
    DeviceType,
    MaintenanceAttachmentCategory,
    MaintenanceCreate,
    Tenant,
    UserCreate,
)
from itam.domain.state_machine import AssetStatus, MaintenanceStatus
from itam.infra.tenant import TenantContext
from itam.services.asset_service import AssetService
from itam.services.assignment_service import AssignmentService
from itam.services.blob_storage import LocalBlobStorage
from itam.services.maintenance_service import MaintenanceService
from itam.services.user_service import UserService


def _asset(context: TenantContext, device_type: DeviceType = DeviceType.DESKTOP) -> str:
    return AssetService().create_asset(context, AssetCreate(device_type=device_type)).id


def _storage_used(engine: Engine, tenant_id: str) -> int:
    with Session(engine) as session:
        tenant = session.get(Tenant, tenant_id)
        assert tenant is not None
        return tenant.current_storage_bytes


def test_maintenance_workflow_restores_available_asset(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("workflow")
    asset_id = _asset(context)
    service = MaintenanceService()
    assets = AssetService()

    record = service.create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="replace fan"))
    assert record.status == MaintenanceStatus.PENDING
    assert assets.get_asset(context, asset_id).status == AssetStatus.MAINTENANCE

    with pytest.raises(InvalidStateTransitionError):
        service.complete(context, record.id)

    started = service.start(context, record.id, notes="parts arrived")
    assert started.status == MaintenanceStatus.IN_PROGRESS
    assert started.started_at is not None
    assert started.performed_by_user_id == context.actor_id
    assert started.notes == "parts arrived"

    completed = service.complete(context, record.id, notes="fan replaced")
    assert completed.status == MaintenanceStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.notes == "parts arrived\nfan replaced"
    assert assets.get_asset(context, asset_id).status == AssetStatus.AVAILABLE

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        service.cancel(context, record.id)
    assert exc_info.value.current == MaintenanceStatus.COMPLETED.value
    assert exc_info.value.requested == MaintenanceStatus.CANCELLED.value


def test_cancelled_maintenance_restores_assigned_holder(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("holder")
    user = UserService().create_user(context, UserCreate(username="frank", password="pw", full_name="Frank"))
    asset_id = _asset(context, DeviceType.LAPTOP)
    AssignmentService().assign(context, asset_id, user.id)
    service = MaintenanceService()
    assets = AssetService()

    record = service.create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="battery check"))
    during = assets.get_asset(context, asset_id)
    assert during.status == AssetStatus.MAINTENANCE
    assert during.assigned_to_user_id is None

    cancelled = service.cancel(context, record.id, notes="not needed")
    assert cancelled.status == MaintenanceStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    after = assets.get_asset(context, asset_id)
    assert after.status == AssetStatus.IN_USE
    assert after.assigned_to_user_id == user.id


def test_asset_stays_in_maintenance_until_last_record_closes(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("overlap")
    asset_id = _asset(context)
    service = MaintenanceService()
    assets = AssetService()

    first = service.create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="disk"))
    second = service.create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="memory"))

    service.cancel(context, first.id)
    assert assets.get_asset(context, asset_id).status == AssetStatus.MAINTENANCE

    service.start(context, second.id)
    service.complete(context, second.id)
    assert assets.get_asset(context, asset_id).status == AssetStatus.AVAILABLE
    assert len(service.list_maintenance(context, asset_id=asset_id)) == 2
    assert len(service.list_maintenance(context, status=MaintenanceStatus.COMPLETED)) == 1


def test_retired_and_lost_assets_cannot_enter_maintenance(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("blocked")
    assets = AssetService()
    service = MaintenanceService()
    retired = _asset(context)
    lost = _asset(context)
    assets.retire_asset(context, retired)
    assets.report_lost(context, lost)

    for asset_id in (retired, lost):
        with pytest.raises(InvalidStateTransitionError):
            service.create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="check"))
    assert service.list_maintenance(context) == []


def test_attachments_track_storage_quota(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("evidence")
    asset_id = _asset(context)
    service = MaintenanceService()
    record = service.create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="repair"))

    photo = service.add_attachment(
        context,
        record.id,
        content=b"\x89PNG-before",
        filename="before.png",
        content_type="image/png",
        category=MaintenanceAttachmentCategory.BEFORE_PHOTO,
    )
    invoice = service.add_attachment(
        context,
        record.id,
        content=b"%PDF-invoice",
        filename="invoice.pdf",
        content_type="application/pdf",
        category=MaintenanceAttachmentCategory.RECEIPT,
    )
    assert _storage_used(test_engine, context.tenant_id) == len(b"\x89PNG-before") + len(b"%PDF-invoice")

    stored, content = service.read_attachment(context, photo.id)
    assert stored.file_name == "before.png"
    assert content == b"\x89PNG-before"
    assert [item.id for item in service.list_attachments(context, record.id)] == [photo.id, invoice.id]

    with pytest.raises(InvalidInputError):
        service.add_attachment(context, record.id, content=b"MZ", filename="tool.exe", content_type="application/x-msdownload")
    assert _storage_used(test_engine, context.tenant_id) == len(b"\x89PNG-before") + len(b"%PDF-invoice")

    service.delete_attachment(context, photo.id)
    assert _storage_used(test_engine, context.tenant_id) == len(b"%PDF-invoice")
    with pytest.raises(NotFoundError):
        service.read_attachment(context, photo.id)

    service.delete_maintenance(context, record.id)
    assert _storage_used(test_engine, context.tenant_id) == 0
    assert AssetService().get_asset(context, asset_id).status == AssetStatus.AVAILABLE
    with pytest.raises(NotFoundError):
        service.get_maintenance(context, record.id)


def test_closed_records_reject_new_attachments(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("closed-evidence")
    asset_id = _asset(context)
    service = MaintenanceService()
    record = service.create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="swap"))
    service.cancel(context, record.id)

    with pytest.raises(ConflictError):
        service.add_attachment(context, record.id, content=b"text", filename="notes.txt", content_type="text/plain")
    assert _storage_used(test_engine, context.tenant_id) == 0


def test_maintenance_is_tenant_scoped(test_engine: Engine, make_tenant) -> None:
    owner = make_tenant("maint-owner")
    other = make_tenant("maint-other")
    asset_id = _asset(owner)
    service = MaintenanceService()

    with pytest.raises(NotFoundError):
        service.create_maintenance(other, MaintenanceCreate(asset_id=asset_id, title="sneak"))
    record = service.create_maintenance(owner, MaintenanceCreate(asset_id=asset_id, title="real"))
    with pytest.raises(NotFoundError):
        service.start(other, record.id)
    assert service.list_maintenance(other) == []


class _ClosingStorage(LocalBlobStorage):
    """Cancels the maintenance record while the blob write is in flight."""

    def __init__(self, root_dir: Path, context: TenantContext, maintenance_id: str) -> None:
        super().__init__(root_dir)
        self.context = context
        self.maintenance_id = maintenance_id

    def put(self, tenant_id: str, content: bytes, filename: str, content_type: str) -> str:
        key = super().put(tenant_id, content, filename, content_type)
        MaintenanceService().cancel(self.context, self.maintenance_id, notes="closed mid-upload")
        return key


def test_record_closed_during_upload_rejects_attachment(test_engine: Engine, make_tenant, tmp_path: Path) -> None:
    context = make_tenant("racing-evidence")
    asset_id = _asset(context)
    record = MaintenanceService().create_maintenance(context, MaintenanceCreate(asset_id=asset_id, title="rebuild"))
    blob_root = tmp_path / "racing-blobs"
    service = MaintenanceService(storage=_ClosingStorage(blob_root, context, record.id))

    with pytest.raises(ConflictError):
        service.add_attachment(context, record.id, content=b"late", filename="late.txt", content_type="text/plain")

    assert service.get_maintenance(context, record.id).status == MaintenanceStatus.CANCELLED
    assert service.list_attachments(context, record.id) == []
    assert _storage_used(test_engine, context.tenant_id) == 0
    assert [path for path in blob_root.rglob("*") if path.is_file()] == []
