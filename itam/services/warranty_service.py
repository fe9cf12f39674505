from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col

from itam.domain import derived
from itam.domain.derived import WarrantyAlertType
from itam.domain.errors import AlreadyAcknowledgedError, NotFoundError
from itam.domain.models import (
    Asset,
    Notification,
    NotificationType,
    Tenant,
    User,
    WarrantyAlert,
    WarrantyAlertSummaryRead,
    WarrantyScanRead,
    now_utc,
)
from itam.domain.state_machine import AssetStatus
from itam.infra.db import get_engine
from itam.infra.events import event_bus
from itam.infra.repository import TenantScopedRepository
from itam.infra.tenant import TenantContext
from itam.services.asset_lifecycle import find_active_assignment
from itam.services.notification_service import enqueue_notifications, publish_created

logger = logging.getLogger("itam.warranty")

SCAN_ACTOR_ID = "system:warranty-scan"
ALERT_NOTIFICATION_TYPES: dict[WarrantyAlertType, NotificationType] = {
    WarrantyAlertType.EXPIRED: NotificationType.ERROR,
    WarrantyAlertType.EXPIRING: NotificationType.WARNING,
}


@dataclass
class _ScanTally:
    scanned_assets: int = 0
    created: list[WarrantyAlert] = field(default_factory=list)
    skipped_alerts: int = 0
    notifications: list[Notification] = field(default_factory=list)

    def merge(self, other: _ScanTally) -> None:
        self.scanned_assets += other.scanned_assets
        self.created.extend(other.created)
        self.skipped_alerts += other.skipped_alerts
        self.notifications.extend(other.notifications)


def _alert_message(asset: Asset, alert_type: WarrantyAlertType, days_remaining: int) -> tuple[str, str]:
    name = f"{derived.display_name(asset)} ({asset.asset_tag})"
    if alert_type == WarrantyAlertType.EXPIRED:
        return "Warranty expired", f"Warranty for {name} expired {-days_remaining} days ago."
    return "Warranty expiring", f"Warranty for {name} expires in {days_remaining} days."


class WarrantyService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def scan(self, tenant_id: str | None = None, today: date | None = None) -> WarrantyScanRead:
        """Create missing EXPIRING/EXPIRED alerts for one tenant or all active ones.

        Safe to repeat: an unacknowledged alert for the same asset, type and end
        date suppresses a new one.
        """
        today = today or derived.utc_today()
        with self._session() as session:
            statement = sa.select(Tenant.id).where(col(Tenant.is_active).is_(True))
            if tenant_id is not None:
                if session.get(Tenant, tenant_id) is None:
                    raise NotFoundError("tenant not found")
                statement = sa.select(Tenant.id).where(col(Tenant.id) == tenant_id)
            tenant_ids = list(session.execute(statement).scalars().all())

        tally = _ScanTally()
        for current_tenant in tenant_ids:
            context = TenantContext(tenant_id=current_tenant, actor_id=SCAN_ACTOR_ID, is_admin=True)
            tally.merge(self._scan_tenant(context, today))

        for alert in tally.created:
            event_bus.publish_dict(
                "warranty_alert.created",
                alert.tenant_id,
                {
                    "alert_id": alert.id,
                    "asset_id": alert.asset_id,
                    "alert_type": WarrantyAlertType(alert.alert_type).value,
                    "warranty_end_date": alert.warranty_end_date.isoformat(),
                    "days_remaining": alert.days_remaining,
                },
            )
        publish_created(tally.notifications)
        logger.info(
            "warranty scan for %s tenant(s) as of %s: %s assets, %s created, %s skipped, %s notifications",
            len(tenant_ids),
            today.isoformat(),
            tally.scanned_assets,
            len(tally.created),
            tally.skipped_alerts,
            len(tally.notifications),
        )
        return WarrantyScanRead(
            scanned_assets=tally.scanned_assets,
            created_alerts=len(tally.created),
            skipped_alerts=tally.skipped_alerts,
            notifications=len(tally.notifications),
        )

    def _scan_tenant(self, context: TenantContext, today: date) -> _ScanTally:
        tally = _ScanTally()
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            assets = repo.fetch_all(
                Asset,
                col(Asset.status) != AssetStatus.RETIRED,
                col(Asset.warranty_end_date).is_not(None),
                order_by=col(Asset.warranty_end_date),
            )
            admin_ids = [
                user.id
                for user in repo.fetch_all(User, col(User.is_admin).is_(True), col(User.is_active).is_(True))
            ]
            for asset in assets:
                tally.scanned_assets += 1
                end_date = asset.warranty_end_date
                days = derived.warranty_days_remaining(end_date, today)
                if end_date is None or days is None:
                    continue
                alert_type = derived.classify_warranty(days)
                if alert_type is None:
                    continue
                duplicate = repo.count(
                    WarrantyAlert,
                    col(WarrantyAlert.asset_id) == asset.id,
                    col(WarrantyAlert.alert_type) == alert_type,
                    col(WarrantyAlert.warranty_end_date) == end_date,
                    col(WarrantyAlert.acknowledged_at).is_(None),
                )
                if duplicate:
                    tally.skipped_alerts += 1
                    continue

                alert = WarrantyAlert(
                    tenant_id=context.tenant_id,
                    asset_id=asset.id,
                    alert_type=alert_type,
                    warranty_end_date=end_date,
                    days_remaining=days,
                )
                repo.add(alert)
                # Custody outlives maintenance, which clears assigned_to_user_id.
                holder = find_active_assignment(repo, asset.id)
                recipients = [holder.user_id] if holder is not None else []
                title, message = _alert_message(asset, alert_type, days)
                notifications = enqueue_notifications(
                    repo,
                    [*recipients, *admin_ids],
                    title=title,
                    message=message,
                    type=ALERT_NOTIFICATION_TYPES[alert_type],
                    link=f"/assets/{asset.id}",
                    related_entity_type="warranty_alert",
                    related_entity_id=alert.id,
                )
                try:
                    session.commit()
                except IntegrityError:
                    # A concurrent scan inserted the same open alert first.
                    session.rollback()
                    tally.skipped_alerts += 1
                    continue
                tally.created.append(alert)
                tally.notifications.extend(notifications)
        return tally

    def acknowledge(self, context: TenantContext, alert_id: str) -> WarrantyAlert:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            alert = repo.get(WarrantyAlert, alert_id, "warranty alert")
            if alert.acknowledged_at is not None:
                raise AlreadyAcknowledgedError(alert.id)
            now = now_utc()
            result = session.execute(
                sa.update(WarrantyAlert)
                .where(col(WarrantyAlert.id) == alert.id)
                .where(col(WarrantyAlert.tenant_id) == context.tenant_id)
                .where(col(WarrantyAlert.acknowledged_at).is_(None))
                .values(acknowledged_at=now, acknowledged_by_user_id=context.actor_id)
                .execution_options(synchronize_session=False)
            )
            if getattr(result, "rowcount", None) != 1:
                session.rollback()
                raise AlreadyAcknowledgedError(alert.id)
            session.commit()
            session.refresh(alert)

        event_bus.publish_dict(
            "warranty_alert.acknowledged",
            context.tenant_id,
            {"alert_id": alert.id, "asset_id": alert.asset_id},
            actor_id=context.actor_id,
        )
        return alert

    def get_alert(self, context: TenantContext, alert_id: str) -> WarrantyAlert:
        with self._session() as session:
            return TenantScopedRepository(session, context).get(WarrantyAlert, alert_id, "warranty alert")

    def list_alerts(
        self,
        context: TenantContext,
        *,
        alert_type: WarrantyAlertType | None = None,
        acknowledged: bool | None = None,
        asset_id: str | None = None,
    ) -> list[WarrantyAlert]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            criteria: list[Any] = []
            if alert_type is not None:
                criteria.append(col(WarrantyAlert.alert_type) == alert_type)
            if acknowledged is True:
                criteria.append(col(WarrantyAlert.acknowledged_at).is_not(None))
            elif acknowledged is False:
                criteria.append(col(WarrantyAlert.acknowledged_at).is_(None))
            if asset_id is not None:
                criteria.append(col(WarrantyAlert.asset_id) == asset_id)
            return repo.fetch_all(WarrantyAlert, *criteria, order_by=col(WarrantyAlert.created_at).desc())

    def summary(self, context: TenantContext) -> WarrantyAlertSummaryRead:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            open_alert = col(WarrantyAlert.acknowledged_at).is_(None)
            return WarrantyAlertSummaryRead(
                expiring_count=repo.count(
                    WarrantyAlert, open_alert, col(WarrantyAlert.alert_type) == WarrantyAlertType.EXPIRING
                ),
                expired_count=repo.count(
                    WarrantyAlert, open_alert, col(WarrantyAlert.alert_type) == WarrantyAlertType.EXPIRED
                ),
                unacknowledged_count=repo.count(WarrantyAlert, open_alert),
                total_count=repo.count(WarrantyAlert),
            )
