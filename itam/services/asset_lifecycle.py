"""Asset state changes shared by the asset, assignment and maintenance services."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlmodel import col

from itam.domain.errors import InvalidStateTransitionError, NotActiveError
from itam.domain.models import Asset, AssetAssignment, Maintenance, ReturnCondition, now_utc
from itam.domain.state_machine import (
    OPEN_MAINTENANCE_STATES,
    AssetEvent,
    AssetStatus,
    resolve_asset_transition,
)
from itam.infra.repository import TenantScopedRepository

logger = logging.getLogger("itam.asset_lifecycle")

MAINTENANCE_BLOCKED_STATES = frozenset({AssetStatus.RETIRED, AssetStatus.LOST})


def transition_asset(
    repo: TenantScopedRepository,
    asset: Asset,
    event: AssetEvent,
    *,
    prior: AssetStatus | None = None,
    now: datetime | None = None,
) -> AssetStatus:
    source = AssetStatus(asset.status)
    target = resolve_asset_transition(source, event, prior)
    repo.claim(asset, "asset")
    asset.status = target
    asset.updated_at = now or now_utc()
    logger.info("asset %s %s: %s -> %s", asset.id, event.value, source.value, target.value)
    return target


def find_active_assignment(repo: TenantScopedRepository, asset_id: str) -> AssetAssignment | None:
    statement = (
        repo.select(AssetAssignment)
        .where(col(AssetAssignment.asset_id) == asset_id)
        .where(col(AssetAssignment.returned_at).is_(None))
    )
    return repo.session.exec(statement).first()


def close_assignment(
    assignment: AssetAssignment,
    *,
    actor_id: str,
    condition: ReturnCondition,
    notes: str | None,
    now: datetime,
) -> None:
    if assignment.returned_at is not None:
        raise NotActiveError(assignment.id)
    assignment.returned_at = now
    assignment.returned_by_user_id = actor_id
    assignment.return_condition = condition
    assignment.return_notes = notes


def close_active_assignment(
    repo: TenantScopedRepository,
    asset: Asset,
    *,
    condition: ReturnCondition,
    notes: str | None,
    now: datetime,
) -> AssetAssignment | None:
    assignment = find_active_assignment(repo, asset.id)
    if assignment is None:
        return None
    close_assignment(assignment, actor_id=repo.context.actor_id, condition=condition, notes=notes, now=now)
    repo.session.add(assignment)
    return assignment


def open_maintenance(
    repo: TenantScopedRepository,
    asset: Asset,
    *,
    title: str,
    description: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Maintenance:
    """Create a PENDING record, moving the asset into MAINTENANCE if needed.

    A user holding the asset keeps the open assignment; only the asset's
    ``assigned_to_user_id`` is cleared until maintenance ends.
    """
    now = now or now_utc()
    status = AssetStatus(asset.status)
    if status in MAINTENANCE_BLOCKED_STATES:
        raise InvalidStateTransitionError(status.value, AssetStatus.MAINTENANCE.value)
    if status != AssetStatus.MAINTENANCE:
        transition_asset(repo, asset, AssetEvent.SEND_TO_MAINTENANCE, now=now)
        asset.status_before_maintenance = status
        asset.assigned_to_user_id = None
        repo.session.add(asset)

    record = Maintenance(
        tenant_id=repo.tenant_id,
        asset_id=asset.id,
        title=title,
        description=description,
        notes=notes,
        created_by_user_id=repo.context.actor_id,
        created_at=now,
    )
    repo.add(record)
    return record


def restore_after_maintenance(
    repo: TenantScopedRepository,
    asset: Asset,
    *,
    closing_id: str,
    now: datetime | None = None,
) -> AssetStatus | None:
    """Return the asset to its prior status once no other record is open."""
    if AssetStatus(asset.status) != AssetStatus.MAINTENANCE:
        return None
    still_open = repo.count(
        Maintenance,
        col(Maintenance.asset_id) == asset.id,
        col(Maintenance.id) != closing_id,
        col(Maintenance.status).in_(list(OPEN_MAINTENANCE_STATES)),
    )
    if still_open:
        return None

    prior = asset.status_before_maintenance
    holder = find_active_assignment(repo, asset.id) if prior == AssetStatus.IN_USE else None
    if holder is None:
        prior = AssetStatus.AVAILABLE
    target = transition_asset(repo, asset, AssetEvent.COMPLETE_MAINTENANCE, prior=prior, now=now)
    asset.assigned_to_user_id = holder.user_id if holder is not None else None
    asset.status_before_maintenance = None
    repo.session.add(asset)
    return target
