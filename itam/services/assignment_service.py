from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col

from itam.domain.errors import AlreadyAssignedError, InvalidInputError
from itam.domain.models import Asset, AssetAssignment, Maintenance, ReturnCondition, User, now_utc
from itam.domain.state_machine import AssetEvent
from itam.infra.db import get_engine
from itam.infra.events import event_bus
from itam.infra.repository import TenantScopedRepository
from itam.infra.tenant import TenantContext
from itam.services.asset_lifecycle import (
    close_assignment,
    find_active_assignment,
    open_maintenance,
    transition_asset,
)

logger = logging.getLogger("itam.assignment")

REPAIR_CONDITIONS = frozenset({ReturnCondition.DAMAGED, ReturnCondition.NEEDS_REPAIR})


class AssignmentService:
    """Append-only custody ledger; records are created and closed, never edited."""

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def assign(
        self,
        context: TenantContext,
        asset_id: str,
        user_id: str,
        notes: str | None = None,
    ) -> AssetAssignment:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            asset = repo.get(Asset, asset_id, "asset")
            user = repo.get(User, user_id, "user")
            if not user.is_active:
                raise InvalidInputError("cannot assign to an inactive user")
            if find_active_assignment(repo, asset.id) is not None:
                raise AlreadyAssignedError(asset.id)

            now = now_utc()
            transition_asset(repo, asset, AssetEvent.ASSIGN, now=now)
            asset.assigned_to_user_id = user.id
            assignment = AssetAssignment(
                tenant_id=context.tenant_id,
                asset_id=asset.id,
                user_id=user.id,
                assigned_by_user_id=context.actor_id,
                assigned_at=now,
                notes=notes,
            )
            repo.add(assignment)
            session.add(asset)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise AlreadyAssignedError(asset.id) from exc
            session.refresh(assignment)

        logger.info("asset %s assigned to user %s", asset_id, user_id)
        event_bus.publish_dict(
            "asset.assigned",
            context.tenant_id,
            {"asset_id": asset_id, "user_id": user_id, "assignment_id": assignment.id},
            actor_id=context.actor_id,
        )
        return assignment

    def return_asset(
        self,
        context: TenantContext,
        assignment_id: str,
        condition: ReturnCondition = ReturnCondition.GOOD,
        notes: str | None = None,
    ) -> AssetAssignment:
        """Close an active assignment; the condition decides where the asset goes.

        GOOD makes it available, DAMAGED and NEEDS_REPAIR open a pending
        maintenance record, LOST marks the asset lost.
        """
        maintenance: Maintenance | None = None
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            assignment = repo.get(AssetAssignment, assignment_id, "assignment")
            asset = repo.get(Asset, assignment.asset_id, "asset")
            now = now_utc()
            close_assignment(assignment, actor_id=context.actor_id, condition=condition, notes=notes, now=now)

            if condition == ReturnCondition.LOST:
                transition_asset(repo, asset, AssetEvent.REPORT_LOST, now=now)
                asset.lost_at = now
            else:
                transition_asset(repo, asset, AssetEvent.RETURN, now=now)
            asset.assigned_to_user_id = None
            session.add(asset)
            session.add(assignment)
            if condition in REPAIR_CONDITIONS:
                maintenance = open_maintenance(
                    repo,
                    asset,
                    title=f"Inspect returned asset ({condition.value.lower().replace('_', ' ')})",
                    notes=notes,
                    now=now,
                )
            session.commit()
            session.refresh(assignment)

        logger.info("assignment %s closed with condition %s", assignment_id, condition.value)
        event_bus.publish_dict(
            "asset.returned",
            context.tenant_id,
            {
                "asset_id": assignment.asset_id,
                "assignment_id": assignment.id,
                "condition": condition.value,
                "maintenance_id": maintenance.id if maintenance is not None else None,
            },
            actor_id=context.actor_id,
        )
        if maintenance is not None:
            event_bus.publish_dict(
                "maintenance.created",
                context.tenant_id,
                {"maintenance_id": maintenance.id, "asset_id": maintenance.asset_id, "source": "return"},
                actor_id=context.actor_id,
            )
        return assignment

    def get_assignment(self, context: TenantContext, assignment_id: str) -> AssetAssignment:
        with self._session() as session:
            return TenantScopedRepository(session, context).get(AssetAssignment, assignment_id, "assignment")

    def get_active_assignment(self, context: TenantContext, asset_id: str) -> AssetAssignment | None:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            repo.get(Asset, asset_id, "asset")
            return find_active_assignment(repo, asset_id)

    def list_asset_history(self, context: TenantContext, asset_id: str) -> list[AssetAssignment]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            repo.get(Asset, asset_id, "asset")
            return repo.fetch_all(
                AssetAssignment,
                col(AssetAssignment.asset_id) == asset_id,
                order_by=col(AssetAssignment.assigned_at).desc(),
            )

    def list_user_assignments(
        self,
        context: TenantContext,
        user_id: str,
        *,
        active_only: bool = False,
    ) -> list[AssetAssignment]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            repo.get(User, user_id, "user")
            criteria = [col(AssetAssignment.user_id) == user_id]
            if active_only:
                criteria.append(col(AssetAssignment.returned_at).is_(None))
            return repo.fetch_all(AssetAssignment, *criteria, order_by=col(AssetAssignment.assigned_at).desc())
