from __future__ import annotations

import logging
from datetime import date
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col

from itam.domain.errors import ConflictError, InvalidInputError
from itam.domain.models import (
    Asset,
    AssetCreate,
    AssetUpdate,
    DeviceType,
    ReturnCondition,
    now_utc,
)
from itam.domain.quotas import ResourceKind
from itam.domain.state_machine import AssetEvent, AssetStatus
from itam.infra.db import get_engine
from itam.infra.events import event_bus
from itam.infra.repository import TenantScopedRepository
from itam.infra.tenant import TenantContext
from itam.services.asset_lifecycle import close_active_assignment, transition_asset
from itam.services.quota_service import QuotaService

logger = logging.getLogger("itam.asset")

TAG_PREFIXES: dict[DeviceType, str] = {
    DeviceType.LAPTOP: "LAP",
    DeviceType.DESKTOP: "DSK",
    DeviceType.MONITOR: "MON",
    DeviceType.PHONE: "PHN",
    DeviceType.TABLET: "TAB",
    DeviceType.PRINTER: "PRN",
    DeviceType.NETWORK: "NET",
    DeviceType.SERVER: "SVR",
    DeviceType.PERIPHERAL: "PER",
    DeviceType.SOFTWARE: "SFT",
    DeviceType.OTHER: "OTH",
}
TAG_ATTEMPTS = 5


def validate_warranty_window(start: date | None, end: date | None) -> None:
    if start is not None and end is not None and end < start:
        raise InvalidInputError("warranty end date must not be before warranty start date")


class AssetService:
    def __init__(self, quota: QuotaService | None = None) -> None:
        self.quota = quota or QuotaService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _next_tag(self, repo: TenantScopedRepository, device_type: DeviceType, today: date) -> str:
        base = f"{TAG_PREFIXES[device_type]}-{today:%Y%m%d}-"
        highest = 0
        for existing in repo.fetch_all(Asset, col(Asset.asset_tag).startswith(base)):
            suffix = existing.asset_tag.removeprefix(base)
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{base}{highest + 1:04d}"

    def create_asset(self, context: TenantContext, payload: AssetCreate) -> Asset:
        validate_warranty_window(payload.warranty_start_date, payload.warranty_end_date)
        with self.quota.reservation(context.tenant_id, ResourceKind.ASSET, 1), self._session() as session:
            repo = TenantScopedRepository(session, context)
            asset: Asset | None = None
            for _ in range(TAG_ATTEMPTS):
                now = now_utc()
                asset = Asset(
                    **payload.model_dump(),
                    tenant_id=context.tenant_id,
                    asset_tag=self._next_tag(repo, payload.device_type, now.date()),
                    created_by=context.actor_id,
                    created_at=now,
                    updated_at=now,
                )
                repo.add(asset)
                try:
                    session.commit()
                    break
                except IntegrityError:
                    # Another writer took the same tag; recount and retry.
                    session.rollback()
                    asset = None
            if asset is None:
                raise ConflictError("could not allocate a unique asset tag")
            session.refresh(asset)

        logger.info("created asset %s (%s) in tenant %s", asset.id, asset.asset_tag, context.tenant_id)
        event_bus.publish_dict(
            "asset.created",
            context.tenant_id,
            {"asset_id": asset.id, "asset_tag": asset.asset_tag, "device_type": asset.device_type},
            actor_id=context.actor_id,
        )
        return asset

    def get_asset(self, context: TenantContext, asset_id: str) -> Asset:
        with self._session() as session:
            return TenantScopedRepository(session, context).get(Asset, asset_id, "asset")

    def list_assets(
        self,
        context: TenantContext,
        *,
        status: AssetStatus | None = None,
        device_type: DeviceType | None = None,
        assigned_to_user_id: str | None = None,
        search: str | None = None,
    ) -> list[Asset]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            criteria: list[Any] = []
            if status is not None:
                criteria.append(col(Asset.status) == status)
            if device_type is not None:
                criteria.append(col(Asset.device_type) == device_type)
            if assigned_to_user_id is not None:
                criteria.append(col(Asset.assigned_to_user_id) == assigned_to_user_id)
            if search:
                pattern = f"%{search.strip()}%"
                criteria.append(
                    or_(
                        col(Asset.asset_tag).ilike(pattern),
                        col(Asset.name).ilike(pattern),
                        col(Asset.serial_number).ilike(pattern),
                        col(Asset.manufacturer).ilike(pattern),
                        col(Asset.model).ilike(pattern),
                    )
                )
            return repo.fetch_all(Asset, *criteria, order_by=col(Asset.created_at).desc())

    def update_asset(self, context: TenantContext, asset_id: str, payload: AssetUpdate) -> Asset:
        changes = payload.model_dump(exclude_unset=True)
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            asset = repo.get(Asset, asset_id, "asset")
            if AssetStatus(asset.status) == AssetStatus.RETIRED:
                raise ConflictError("retired assets cannot be modified")
            if "device_type" in changes and changes["device_type"] is None:
                raise InvalidInputError("device_type cannot be cleared")
            validate_warranty_window(
                changes.get("warranty_start_date", asset.warranty_start_date),
                changes.get("warranty_end_date", asset.warranty_end_date),
            )
            repo.claim(asset, "asset")
            for key, value in changes.items():
                setattr(asset, key, value)
            asset.updated_at = now_utc()
            session.add(asset)
            session.commit()
            session.refresh(asset)

        event_bus.publish_dict(
            "asset.updated",
            context.tenant_id,
            {"asset_id": asset.id, "fields": sorted(changes)},
            actor_id=context.actor_id,
        )
        return asset

    def retire_asset(self, context: TenantContext, asset_id: str, reason: str | None = None) -> Asset:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            asset = repo.get(Asset, asset_id, "asset")
            now = now_utc()
            transition_asset(repo, asset, AssetEvent.RETIRE, now=now)
            closed = close_active_assignment(
                repo,
                asset,
                condition=ReturnCondition.GOOD,
                notes="closed on retirement",
                now=now,
            )
            asset.assigned_to_user_id = None
            asset.status_before_maintenance = None
            asset.retired_at = now
            asset.retired_reason = reason
            session.add(asset)
            session.commit()
            session.refresh(asset)

        event_bus.publish_dict(
            "asset.retired",
            context.tenant_id,
            {"asset_id": asset.id, "reason": reason, "closed_assignment_id": closed.id if closed else None},
            actor_id=context.actor_id,
        )
        return asset

    def report_lost(self, context: TenantContext, asset_id: str, notes: str | None = None) -> Asset:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            asset = repo.get(Asset, asset_id, "asset")
            now = now_utc()
            transition_asset(repo, asset, AssetEvent.REPORT_LOST, now=now)
            closed = close_active_assignment(repo, asset, condition=ReturnCondition.LOST, notes=notes, now=now)
            asset.assigned_to_user_id = None
            asset.status_before_maintenance = None
            asset.lost_at = now
            session.add(asset)
            session.commit()
            session.refresh(asset)

        event_bus.publish_dict(
            "asset.lost",
            context.tenant_id,
            {"asset_id": asset.id, "closed_assignment_id": closed.id if closed else None},
            actor_id=context.actor_id,
        )
        return asset

    def recover_asset(
        self,
        context: TenantContext,
        asset_id: str,
        *,
        confirm: bool,
        location: str | None = None,
    ) -> Asset:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            asset = repo.get(Asset, asset_id, "asset")
            if not confirm:
                raise InvalidInputError("recovering a lost asset requires confirmation")
            transition_asset(repo, asset, AssetEvent.RECOVER)
            asset.lost_at = None
            if location is not None:
                asset.location = location
            session.add(asset)
            session.commit()
            session.refresh(asset)

        event_bus.publish_dict("asset.recovered", context.tenant_id, {"asset_id": asset.id}, actor_id=context.actor_id)
        return asset
