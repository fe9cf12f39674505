from __future__ import annotations

import re
from datetime import date

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session

from itam.domain.errors import (
    ConcurrentModificationError,
    ConflictError,
    InvalidInputError,
    InvalidStateTransitionError,
    NotFoundError,
    TenantMismatchError,
)
from itam.domain.models import Asset, AssetCreate, AssetUpdate, DeviceType, ReturnCondition, UserCreate, now_utc
from itam.domain.state_machine import AssetStatus
from itam.infra.repository import TenantScopedRepository
from itam.services.asset_service import AssetService
from itam.services.assignment_service import AssignmentService
from itam.services.user_service import UserService


def test_asset_tags_follow_prefix_date_sequence(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("tags")
    other = make_tenant("tags-other")
    assets = AssetService()
    first = assets.create_asset(context, AssetCreate(device_type=DeviceType.LAPTOP))
    second = assets.create_asset(context, AssetCreate(device_type=DeviceType.LAPTOP))
    monitor = assets.create_asset(context, AssetCreate(device_type=DeviceType.MONITOR))
    foreign = assets.create_asset(other, AssetCreate(device_type=DeviceType.LAPTOP))

    today = f"{now_utc():%Y%m%d}"
    assert first.asset_tag == f"LAP-{today}-0001"
    assert second.asset_tag == f"LAP-{today}-0002"
    assert monitor.asset_tag == f"MON-{today}-0001"
    assert foreign.asset_tag == f"LAP-{today}-0001"
    assert re.fullmatch(r"[A-Z]{3}-\d{8}-\d{4}", first.asset_tag)
    assert first.status == AssetStatus.AVAILABLE
    assert first.assigned_to_user_id is None
    assert first.created_by == context.actor_id


def test_warranty_window_is_validated_on_create_and_update(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("warranty-window")
    assets = AssetService()
    with pytest.raises(InvalidInputError):
        assets.create_asset(
            context,
            AssetCreate(
                device_type=DeviceType.SERVER,
                warranty_start_date=date(2026, 5, 1),
                warranty_end_date=date(2026, 4, 1),
            ),
        )
    asset = assets.create_asset(
        context,
        AssetCreate(device_type=DeviceType.SERVER, warranty_start_date=date(2026, 5, 1)),
    )
    with pytest.raises(InvalidInputError):
        assets.update_asset(context, asset.id, AssetUpdate(warranty_end_date=date(2026, 1, 1)))

    updated = assets.update_asset(
        context,
        asset.id,
        AssetUpdate(name="rack-01", warranty_end_date=date(2029, 5, 1), location="DC-1"),
    )
    assert updated.name == "rack-01"
    assert updated.location == "DC-1"
    assert updated.version == asset.version + 1


def test_retire_closes_active_assignment_and_is_terminal(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("retire")
    holder = UserService().create_user(context, UserCreate(username="holder", password="pw", full_name="Holder"))
    assets = AssetService()
    ledger = AssignmentService()
    asset = assets.create_asset(context, AssetCreate(device_type=DeviceType.TABLET))
    assignment = ledger.assign(context, asset.id, holder.id)

    retired = assets.retire_asset(context, asset.id, reason="end of life")
    assert retired.status == AssetStatus.RETIRED
    assert retired.assigned_to_user_id is None
    assert retired.retired_reason == "end of life"

    closed = ledger.get_assignment(context, assignment.id)
    assert closed.returned_at is not None
    assert closed.return_condition == ReturnCondition.GOOD
    assert closed.returned_by_user_id == context.actor_id

    with pytest.raises(InvalidStateTransitionError):
        assets.retire_asset(context, asset.id)
    with pytest.raises(InvalidStateTransitionError):
        assets.report_lost(context, asset.id)
    with pytest.raises(ConflictError):
        assets.update_asset(context, asset.id, AssetUpdate(name="renamed"))


def test_lost_asset_recovery_requires_confirmation(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("lost")
    assets = AssetService()
    asset = assets.create_asset(context, AssetCreate(device_type=DeviceType.PHONE))

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        assets.recover_asset(context, asset.id, confirm=True)
    assert exc_info.value.current == AssetStatus.AVAILABLE.value

    lost = assets.report_lost(context, asset.id)
    assert lost.status == AssetStatus.LOST
    assert lost.lost_at is not None

    with pytest.raises(InvalidInputError):
        assets.recover_asset(context, asset.id, confirm=False)
    assert assets.get_asset(context, asset.id).status == AssetStatus.LOST

    recovered = assets.recover_asset(context, asset.id, confirm=True, location="front desk")
    assert recovered.status == AssetStatus.AVAILABLE
    assert recovered.location == "front desk"
    assert recovered.lost_at is None


def test_recovery_of_foreign_asset_reports_not_found_before_confirmation(test_engine: Engine, make_tenant) -> None:
    owner = make_tenant("lost-owner")
    other = make_tenant("lost-other")
    assets = AssetService()
    asset = assets.create_asset(owner, AssetCreate(device_type=DeviceType.PHONE))
    assets.report_lost(owner, asset.id)

    with pytest.raises(NotFoundError):
        assets.recover_asset(other, asset.id, confirm=False)
    with pytest.raises(NotFoundError):
        assets.recover_asset(other, "missing-asset", confirm=False)
    with pytest.raises(InvalidInputError):
        assets.recover_asset(owner, asset.id, confirm=False)
    assert assets.get_asset(owner, asset.id).status == AssetStatus.LOST


def test_other_tenant_assets_are_invisible(test_engine: Engine, make_tenant) -> None:
    owner = make_tenant("owner")
    intruder = make_tenant("intruder")
    assets = AssetService()
    asset = assets.create_asset(owner, AssetCreate(device_type=DeviceType.PRINTER))

    with pytest.raises(NotFoundError) as exc_info:
        assets.get_asset(intruder, asset.id)
    assert isinstance(exc_info.value, TenantMismatchError)
    assert str(exc_info.value) == "asset not found"

    with pytest.raises(NotFoundError) as missing_info:
        assets.get_asset(intruder, "missing-id")
    assert not isinstance(missing_info.value, TenantMismatchError)
    assert str(missing_info.value) == str(exc_info.value)

    with pytest.raises(NotFoundError):
        assets.retire_asset(intruder, asset.id)
    assert assets.list_assets(intruder) == []
    assert assets.get_asset(owner, asset.id).status == AssetStatus.AVAILABLE


def test_stale_version_claim_is_rejected(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("versions")
    assets = AssetService()
    asset = assets.create_asset(context, AssetCreate(device_type=DeviceType.DESKTOP))

    with Session(test_engine, expire_on_commit=False) as session:
        repo = TenantScopedRepository(session, context)
        stale = repo.get(Asset, asset.id, "asset")
        assets.update_asset(context, asset.id, AssetUpdate(notes="concurrent edit"))
        with pytest.raises(ConcurrentModificationError):
            repo.claim(stale, "asset")


def test_list_assets_filters(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("filters")
    assets = AssetService()
    laptop = assets.create_asset(context, AssetCreate(device_type=DeviceType.LAPTOP, serial_number="SN-42"))
    assets.create_asset(context, AssetCreate(device_type=DeviceType.MONITOR, manufacturer="Dell"))
    assets.report_lost(context, laptop.id)

    assert [item.id for item in assets.list_assets(context, status=AssetStatus.LOST)] == [laptop.id]
    assert len(assets.list_assets(context, device_type=DeviceType.MONITOR)) == 1
    assert [item.id for item in assets.list_assets(context, search="sn-42")] == [laptop.id]
