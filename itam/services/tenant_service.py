from __future__ import annotations

import logging
import re

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from itam.domain.errors import ConflictError, InvalidInputError, NotFoundError, QuotaExceededError
from itam.domain.models import (
    Asset,
    AssetAssignment,
    Attachment,
    Maintenance,
    MaintenanceAttachment,
    Notification,
    ResourceUsageRead,
    Tenant,
    TenantCreate,
    TenantUsageRead,
    User,
    WarrantyAlert,
    now_utc,
)
from itam.domain.quotas import USAGE_COLUMNS, ResourceKind, SubscriptionTier, limits_for_tier
from itam.infra.db import get_engine
from itam.infra.events import event_bus
from itam.infra.tenant import TenantContext

logger = logging.getLogger("itam.tenant")

_SLUG_INVALID = re.compile(r"[^a-z0-9-]+")

# Tables whose rows keep a tenant from being deleted.
_REFERENCING_MODELS: tuple[type, ...] = (
    User,
    Asset,
    AssetAssignment,
    Attachment,
    Maintenance,
    MaintenanceAttachment,
    WarrantyAlert,
    Notification,
)


def normalize_slug(raw: str) -> str:
    slug = _SLUG_INVALID.sub("-", raw.strip().lower()).strip("-")
    return re.sub(r"-{2,}", "-", slug)


class TenantService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get(self, session: Session, tenant_id: str) -> Tenant:
        tenant = session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant not found")
        return tenant

    def create_tenant(self, payload: TenantCreate) -> Tenant:
        name = payload.name.strip()
        if not name:
            raise InvalidInputError("tenant name is required")
        slug = normalize_slug(payload.slug or name)
        if not slug:
            raise InvalidInputError("tenant slug is empty after normalization")
        limits = limits_for_tier(payload.subscription_tier)
        with self._session() as session:
            tenant = Tenant(
                name=name,
                slug=slug,
                subscription_tier=payload.subscription_tier,
                subscription_end_at=payload.subscription_end_at,
                max_assets=limits.max_assets,
                max_users=limits.max_users,
                max_storage_bytes=limits.max_storage_bytes,
            )
            session.add(tenant)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant name or slug already exists") from exc
            session.refresh(tenant)

        logger.info("created tenant %s (%s, %s)", tenant.id, tenant.slug, tenant.subscription_tier)
        event_bus.publish_dict(
            "tenant.created",
            tenant.id,
            {"tenant_id": tenant.id, "slug": tenant.slug, "tier": tenant.subscription_tier},
        )
        return tenant

    def get_tenant(self, tenant_id: str) -> Tenant:
        with self._session() as session:
            return self._get(session, tenant_id)

    def list_tenants(self, *, active_only: bool = False) -> list[Tenant]:
        with self._session() as session:
            statement = select(Tenant)
            if active_only:
                statement = statement.where(col(Tenant.is_active).is_(True))
            return list(session.exec(statement.order_by(col(Tenant.created_at))).all())

    def change_tier(self, context: TenantContext, tier: SubscriptionTier) -> Tenant:
        limits = limits_for_tier(tier)
        with self._session() as session:
            result = session.execute(
                sa.update(Tenant)
                .where(col(Tenant.id) == context.tenant_id)
                .where(col(Tenant.current_asset_count) <= limits.max_assets)
                .where(col(Tenant.current_user_count) <= limits.max_users)
                .where(col(Tenant.current_storage_bytes) <= limits.max_storage_bytes)
                .values(
                    subscription_tier=tier,
                    max_assets=limits.max_assets,
                    max_users=limits.max_users,
                    max_storage_bytes=limits.max_storage_bytes,
                    updated_at=now_utc(),
                )
                .execution_options(synchronize_session=False)
            )
            if not getattr(result, "rowcount", None):
                session.rollback()
                tenant = self._get(session, context.tenant_id)
                for kind, (current_name, _) in USAGE_COLUMNS.items():
                    current = int(getattr(tenant, current_name))
                    limit = limits.limit_for(kind)
                    if current > limit:
                        logger.warning(
                            "tier change to %s refused for tenant %s: %s usage %s exceeds %s",
                            tier,
                            tenant.id,
                            kind.value,
                            current,
                            limit,
                        )
                        raise QuotaExceededError(kind.value, limit, current)
                raise ConflictError("tenant changed concurrently, retry the tier change")
            session.commit()
            tenant = session.get(Tenant, context.tenant_id, populate_existing=True)
            if tenant is None:
                raise NotFoundError("tenant not found")

        logger.info("tenant %s moved to tier %s", tenant.id, tier)
        event_bus.publish_dict(
            "tenant.tier_changed",
            tenant.id,
            {"tenant_id": tenant.id, "tier": tier},
            actor_id=context.actor_id,
        )
        return tenant

    def set_active(self, context: TenantContext, is_active: bool) -> Tenant:
        with self._session() as session:
            tenant = self._get(session, context.tenant_id)
            tenant.is_active = is_active
            tenant.updated_at = now_utc()
            session.add(tenant)
            session.commit()
            session.refresh(tenant)

        event_type = "tenant.activated" if is_active else "tenant.deactivated"
        logger.info("%s: %s", event_type, tenant.id)
        event_bus.publish_dict(event_type, tenant.id, {"tenant_id": tenant.id}, actor_id=context.actor_id)
        return tenant

    def get_usage(self, context: TenantContext) -> TenantUsageRead:
        with self._session() as session:
            tenant = self._get(session, context.tenant_id)
            usage = [
                ResourceUsageRead(
                    resource_kind=kind,
                    current=int(getattr(tenant, current_name)),
                    limit=int(getattr(tenant, limit_name)),
                )
                for kind, (current_name, limit_name) in USAGE_COLUMNS.items()
            ]
            return TenantUsageRead(
                tenant_id=tenant.id,
                tenant_name=tenant.name,
                subscription_tier=tenant.subscription_tier,
                is_active=tenant.is_active,
                usage=usage,
            )

    def _live_usage(self, session: Session, tenant_id: str) -> dict[ResourceKind, int]:
        asset_count = session.execute(
            sa.select(sa.func.count()).select_from(Asset).where(col(Asset.tenant_id) == tenant_id)
        ).scalar_one()
        user_count = session.execute(
            sa.select(sa.func.count()).select_from(User).where(col(User.tenant_id) == tenant_id)
        ).scalar_one()
        asset_bytes = session.execute(
            sa.select(sa.func.coalesce(sa.func.sum(Attachment.size_bytes), 0)).where(
                col(Attachment.tenant_id) == tenant_id
            )
        ).scalar_one()
        maintenance_bytes = session.execute(
            sa.select(sa.func.coalesce(sa.func.sum(MaintenanceAttachment.size_bytes), 0)).where(
                col(MaintenanceAttachment.tenant_id) == tenant_id
            )
        ).scalar_one()
        return {
            ResourceKind.ASSET: int(asset_count),
            ResourceKind.USER: int(user_count),
            ResourceKind.STORAGE_BYTES: int(asset_bytes) + int(maintenance_bytes),
        }

    def reconcile_usage(self, tenant_id: str) -> Tenant:
        """Overwrite the usage counters with counts taken from live rows."""
        with self._session() as session:
            tenant = self._get(session, tenant_id)
            live = self._live_usage(session, tenant_id)
            drift: dict[str, dict[str, int]] = {}
            for kind, (current_name, _) in USAGE_COLUMNS.items():
                stored = int(getattr(tenant, current_name))
                if stored != live[kind]:
                    drift[kind.value] = {"stored": stored, "live": live[kind]}
                setattr(tenant, current_name, live[kind])
            tenant.updated_at = now_utc()
            session.add(tenant)
            session.commit()
            session.refresh(tenant)

        if drift:
            logger.warning("reconciled usage drift for tenant %s: %s", tenant_id, drift)
            event_bus.publish_dict("tenant.usage_reconciled", tenant_id, {"drift": drift})
        return tenant

    def delete_tenant(self, tenant_id: str) -> None:
        with self._session() as session:
            tenant = self._get(session, tenant_id)
            for model in _REFERENCING_MODELS:
                remaining = session.execute(
                    sa.select(sa.func.count()).select_from(model).where(model.tenant_id == tenant_id)  # type: ignore[attr-defined]
                ).scalar_one()
                if remaining:
                    raise ConflictError(f"tenant still owns {model.__tablename__} rows")  # type: ignore[attr-defined]
            session.delete(tenant)
            session.commit()
        logger.info("deleted tenant %s", tenant_id)
