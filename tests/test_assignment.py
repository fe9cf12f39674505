from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from itam.domain.derived import assignment_duration
from itam.domain.errors import (
    AlreadyAssignedError,
    ConcurrentModificationError,
    InvalidInputError,
    InvalidStateTransitionError,
    NotActiveError,
    NotFoundError,
)
from itam.domain.models import AssetAssignment, AssetCreate, DeviceType, ReturnCondition, UserCreate
from itam.domain.state_machine import AssetStatus, MaintenanceStatus
from itam.infra.tenant import TenantContext
from itam.services import assignment_service
from itam.services.asset_service import AssetService
from itam.services.asset_lifecycle import find_active_assignment
from itam.services.assignment_service import AssignmentService
from itam.services.maintenance_service import MaintenanceService
from itam.services.user_service import UserService


def _user(context: TenantContext, username: str) -> str:
    user = UserService().create_user(context, UserCreate(username=username, password="pw", full_name=username))
    return user.id


def _laptop(context: TenantContext) -> str:
    return AssetService().create_asset(context, AssetCreate(device_type=DeviceType.LAPTOP)).id


def test_assign_and_return_in_good_condition(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("custody")
    user_id = _user(context, "alice")
    asset_id = _laptop(context)
    ledger = AssignmentService()
    assets = AssetService()

    assignment = ledger.assign(context, asset_id, user_id, notes="onboarding")
    asset = assets.get_asset(context, asset_id)
    assert asset.status == AssetStatus.IN_USE
    assert asset.assigned_to_user_id == user_id
    assert assignment.returned_at is None
    assert assignment.assigned_by_user_id == context.actor_id
    assert ledger.get_active_assignment(context, asset_id).id == assignment.id

    returned = ledger.return_asset(context, assignment.id, ReturnCondition.GOOD, notes="all fine")
    assert returned.returned_at is not None
    assert returned.return_condition == ReturnCondition.GOOD
    assert returned.return_notes == "all fine"
    asset = assets.get_asset(context, asset_id)
    assert asset.status == AssetStatus.AVAILABLE
    assert asset.assigned_to_user_id is None
    assert ledger.get_active_assignment(context, asset_id) is None

    with pytest.raises(NotActiveError):
        ledger.return_asset(context, assignment.id)


def test_second_assignment_is_rejected_while_active(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("double-assign")
    alice = _user(context, "alice")
    bob = _user(context, "bob")
    asset_id = _laptop(context)
    ledger = AssignmentService()

    ledger.assign(context, asset_id, alice)
    with pytest.raises(AlreadyAssignedError):
        ledger.assign(context, asset_id, bob)

    assert [item.user_id for item in ledger.list_asset_history(context, asset_id)] == [alice]
    assert ledger.list_user_assignments(context, bob) == []


def _open_rows(engine: Engine, asset_id: str) -> list[AssetAssignment]:
    with Session(engine) as session:
        statement = (
            select(AssetAssignment)
            .where(col(AssetAssignment.asset_id) == asset_id)
            .where(col(AssetAssignment.returned_at).is_(None))
        )
        return list(session.exec(statement).all())


def test_assign_losing_version_race_is_rejected(
    test_engine: Engine,
    make_tenant,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    context = make_tenant("assign-race")
    alice = _user(context, "alice")
    bob = _user(context, "bob")
    asset_id = _laptop(context)
    raced: list[str] = []
    racing: list[bool] = []

    def _find_then_lose_race(repo, target_id):
        found = find_active_assignment(repo, target_id)
        if not racing:
            racing.append(True)
            raced.append(AssignmentService().assign(context, target_id, bob).id)
        return found

    monkeypatch.setattr(assignment_service, "find_active_assignment", _find_then_lose_race)
    with pytest.raises(ConcurrentModificationError):
        AssignmentService().assign(context, asset_id, alice)

    assert [row.id for row in _open_rows(test_engine, asset_id)] == raced
    assert AssetService().get_asset(context, asset_id).assigned_to_user_id == bob


def test_open_assignment_index_rejects_second_custody_row(
    test_engine: Engine,
    make_tenant,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    context = make_tenant("assign-index")
    alice = _user(context, "alice")
    bob = _user(context, "bob")
    asset_id = _laptop(context)

    def _find_then_insert_row(repo, target_id):
        found = find_active_assignment(repo, target_id)
        with Session(test_engine) as session:
            session.add(
                AssetAssignment(
                    tenant_id=context.tenant_id,
                    asset_id=target_id,
                    user_id=bob,
                    assigned_by_user_id=context.actor_id,
                )
            )
            session.commit()
        return found

    monkeypatch.setattr(assignment_service, "find_active_assignment", _find_then_insert_row)
    with pytest.raises(AlreadyAssignedError):
        AssignmentService().assign(context, asset_id, alice)

    (only,) = _open_rows(test_engine, asset_id)
    assert only.user_id == bob
    assert AssetService().get_asset(context, asset_id).status == AssetStatus.AVAILABLE


def test_assign_rejects_unavailable_assets_and_inactive_users(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("assign-guards")
    users = UserService()
    carol = _user(context, "carol")
    asset_id = _laptop(context)
    ledger = AssignmentService()

    users.set_active(context, carol, False)
    with pytest.raises(InvalidInputError):
        ledger.assign(context, asset_id, carol)

    users.set_active(context, carol, True)
    AssetService().report_lost(context, asset_id)
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        ledger.assign(context, asset_id, carol)
    assert exc_info.value.current == AssetStatus.LOST.value
    assert exc_info.value.requested == AssetStatus.IN_USE.value


def test_damaged_return_opens_maintenance(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("damaged")
    user_id = _user(context, "dave")
    asset_id = _laptop(context)
    ledger = AssignmentService()

    assignment = ledger.assign(context, asset_id, user_id)
    ledger.return_asset(context, assignment.id, ReturnCondition.DAMAGED, notes="cracked screen")

    asset = AssetService().get_asset(context, asset_id)
    assert asset.status == AssetStatus.MAINTENANCE
    assert asset.assigned_to_user_id is None
    records = MaintenanceService().list_maintenance(context, asset_id=asset_id)
    assert len(records) == 1
    assert records[0].status == MaintenanceStatus.PENDING
    assert records[0].notes == "cracked screen"


def test_lost_return_marks_asset_lost(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("lost-return")
    user_id = _user(context, "erin")
    asset_id = _laptop(context)
    ledger = AssignmentService()

    assignment = ledger.assign(context, asset_id, user_id)
    closed = ledger.return_asset(context, assignment.id, ReturnCondition.LOST)

    assert closed.return_condition == ReturnCondition.LOST
    asset = AssetService().get_asset(context, asset_id)
    assert asset.status == AssetStatus.LOST
    assert asset.lost_at is not None


def test_history_is_newest_first_and_durations_are_positive(test_engine: Engine, make_tenant) -> None:
    context = make_tenant("history")
    alice = _user(context, "alice")
    bob = _user(context, "bob")
    asset_id = _laptop(context)
    ledger = AssignmentService()

    first = ledger.assign(context, asset_id, alice)
    ledger.return_asset(context, first.id)
    second = ledger.assign(context, asset_id, bob)

    history = ledger.list_asset_history(context, asset_id)
    assert [item.id for item in history] == [second.id, first.id]
    closed = history[1]
    assert closed.returned_at is not None
    assert assignment_duration(closed) >= timedelta(0)
    assert assignment_duration(history[0]) >= timedelta(0)

    assert [item.id for item in ledger.list_user_assignments(context, alice)] == [first.id]
    assert ledger.list_user_assignments(context, alice, active_only=True) == []
    assert [item.id for item in ledger.list_user_assignments(context, bob, active_only=True)] == [second.id]


def test_cross_tenant_assignment_is_not_found(test_engine: Engine, make_tenant) -> None:
    tenant_a = make_tenant("ledger-a")
    tenant_b = make_tenant("ledger-b")
    user_a = _user(tenant_a, "alice")
    user_b = _user(tenant_b, "bob")
    asset_a = _laptop(tenant_a)
    ledger = AssignmentService()

    with pytest.raises(NotFoundError):
        ledger.assign(tenant_b, asset_a, user_b)
    with pytest.raises(NotFoundError):
        ledger.assign(tenant_a, asset_a, user_b)

    assignment = ledger.assign(tenant_a, asset_a, user_a)
    with pytest.raises(NotFoundError):
        ledger.return_asset(tenant_b, assignment.id)
    with pytest.raises(NotFoundError):
        ledger.get_assignment(tenant_b, assignment.id)
    assert ledger.get_assignment(tenant_a, assignment.id).returned_at is None
