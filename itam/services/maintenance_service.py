from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session, col

from itam.domain.errors import ConflictError, InvalidStateTransitionError
from itam.domain.models import (
    Asset,
    Maintenance,
    MaintenanceAttachment,
    MaintenanceAttachmentCategory,
    MaintenanceCreate,
    now_utc,
)
from itam.domain.quotas import ResourceKind
from itam.domain.state_machine import (
    OPEN_MAINTENANCE_STATES,
    MaintenanceStatus,
    ensure_maintenance_transition,
)
from itam.infra.db import get_engine
from itam.infra.events import event_bus
from itam.infra.repository import TenantScopedRepository
from itam.infra.tenant import TenantContext
from itam.services.asset_lifecycle import open_maintenance, restore_after_maintenance
from itam.services.attachment_service import discard_blob, stage_upload, validate_upload
from itam.services.blob_storage import BlobStorage, LocalBlobStorage
from itam.services.quota_service import QuotaService

logger = logging.getLogger("itam.maintenance")


class MaintenanceService:
    def __init__(self, quota: QuotaService | None = None, storage: BlobStorage | None = None) -> None:
        self.quota = quota or QuotaService()
        self.storage = storage or LocalBlobStorage()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _publish(self, context: TenantContext, event_type: str, record: Maintenance, **extra: Any) -> None:
        payload: dict[str, Any] = {
            "maintenance_id": record.id,
            "asset_id": record.asset_id,
            "status": MaintenanceStatus(record.status).value,
        }
        payload.update(extra)
        event_bus.publish_dict(event_type, context.tenant_id, payload, actor_id=context.actor_id)

    def create_maintenance(self, context: TenantContext, payload: MaintenanceCreate) -> Maintenance:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            asset = repo.get(Asset, payload.asset_id, "asset")
            record = open_maintenance(
                repo,
                asset,
                title=payload.title,
                description=payload.description,
                notes=payload.notes,
            )
            session.commit()
            session.refresh(record)

        logger.info("opened maintenance %s for asset %s", record.id, record.asset_id)
        self._publish(context, "maintenance.created", record)
        return record

    def get_maintenance(self, context: TenantContext, maintenance_id: str) -> Maintenance:
        with self._session() as session:
            return TenantScopedRepository(session, context).get(Maintenance, maintenance_id, "maintenance")

    def list_maintenance(
        self,
        context: TenantContext,
        *,
        asset_id: str | None = None,
        status: MaintenanceStatus | None = None,
    ) -> list[Maintenance]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            criteria: list[Any] = []
            if asset_id is not None:
                repo.get(Asset, asset_id, "asset")
                criteria.append(col(Maintenance.asset_id) == asset_id)
            if status is not None:
                criteria.append(col(Maintenance.status) == status)
            return repo.fetch_all(Maintenance, *criteria, order_by=col(Maintenance.created_at).desc())

    def _transition(
        self,
        context: TenantContext,
        maintenance_id: str,
        target: MaintenanceStatus,
        notes: str | None,
    ) -> tuple[Maintenance, str | None]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            record = repo.get(Maintenance, maintenance_id, "maintenance")
            source = MaintenanceStatus(record.status)
            ensure_maintenance_transition(source, target)
            if target == MaintenanceStatus.IN_PROGRESS and record.started_at is not None:
                raise InvalidStateTransitionError(source.value, target.value)
            if target == MaintenanceStatus.COMPLETED and record.started_at is None:
                raise InvalidStateTransitionError(source.value, target.value)

            repo.claim(record, "maintenance")
            now = now_utc()
            record.status = target
            if target == MaintenanceStatus.IN_PROGRESS:
                record.started_at = now
                record.performed_by_user_id = context.actor_id
            elif target == MaintenanceStatus.COMPLETED:
                record.completed_at = now
            else:
                record.cancelled_at = now
            if notes:
                record.notes = f"{record.notes}\n{notes}" if record.notes else notes
            session.add(record)

            restored: str | None = None
            if target not in OPEN_MAINTENANCE_STATES:
                asset = repo.get(Asset, record.asset_id, "asset")
                asset_status = restore_after_maintenance(repo, asset, closing_id=record.id, now=now)
                restored = asset_status.value if asset_status is not None else None
            session.commit()
            session.refresh(record)

        logger.info("maintenance %s: %s -> %s", record.id, source.value, target.value)
        return record, restored

    def start(self, context: TenantContext, maintenance_id: str, notes: str | None = None) -> Maintenance:
        record, _ = self._transition(context, maintenance_id, MaintenanceStatus.IN_PROGRESS, notes)
        self._publish(context, "maintenance.started", record)
        return record

    def complete(self, context: TenantContext, maintenance_id: str, notes: str | None = None) -> Maintenance:
        record, restored = self._transition(context, maintenance_id, MaintenanceStatus.COMPLETED, notes)
        self._publish(context, "maintenance.completed", record, asset_status=restored)
        return record

    def cancel(self, context: TenantContext, maintenance_id: str, notes: str | None = None) -> Maintenance:
        record, restored = self._transition(context, maintenance_id, MaintenanceStatus.CANCELLED, notes)
        self._publish(context, "maintenance.cancelled", record, asset_status=restored)
        return record

    def delete_maintenance(self, context: TenantContext, maintenance_id: str) -> None:
        """Remove a record with its evidence files, releasing their storage quota."""
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            record = repo.get(Maintenance, maintenance_id, "maintenance")
            attachments = repo.fetch_all(
                MaintenanceAttachment,
                col(MaintenanceAttachment.maintenance_id) == record.id,
            )
            storage_keys = [item.storage_key for item in attachments]
            released = sum(item.size_bytes for item in attachments)
            was_open = MaintenanceStatus(record.status) in OPEN_MAINTENANCE_STATES
            asset_id = record.asset_id

            for item in attachments:
                session.delete(item)
            session.flush()
            session.delete(record)
            self.quota.release(context.tenant_id, ResourceKind.STORAGE_BYTES, released, session=session)
            if was_open:
                asset = repo.get(Asset, asset_id, "asset")
                restore_after_maintenance(repo, asset, closing_id=maintenance_id)
            session.commit()

        for key in storage_keys:
            discard_blob(self.storage, key)
        logger.info("deleted maintenance %s with %s attachments", maintenance_id, len(storage_keys))
        event_bus.publish_dict(
            "maintenance.deleted",
            context.tenant_id,
            {"maintenance_id": maintenance_id, "asset_id": asset_id, "released_bytes": released},
            actor_id=context.actor_id,
        )

    def add_attachment(
        self,
        context: TenantContext,
        maintenance_id: str,
        *,
        content: bytes,
        filename: str,
        content_type: str,
        category: MaintenanceAttachmentCategory = MaintenanceAttachmentCategory.OTHER,
        description: str | None = None,
    ) -> MaintenanceAttachment:
        with self._session() as session:
            record = TenantScopedRepository(session, context).get(Maintenance, maintenance_id, "maintenance")
            status = MaintenanceStatus(record.status)
            if status not in OPEN_MAINTENANCE_STATES:
                raise ConflictError(f"cannot attach files to a {status.value} maintenance record")
        clean_name, clean_type = validate_upload(content, filename, content_type)

        with (
            stage_upload(self.quota, self.storage, context.tenant_id, content, clean_name, clean_type) as key,
            self._session() as session,
        ):
            repo = TenantScopedRepository(session, context)
            # The record may have closed while the blob was being written.
            record = repo.get(Maintenance, maintenance_id, "maintenance")
            status = MaintenanceStatus(record.status)
            if status not in OPEN_MAINTENANCE_STATES:
                raise ConflictError(f"cannot attach files to a {status.value} maintenance record")
            repo.claim(record, "maintenance")
            attachment = MaintenanceAttachment(
                tenant_id=context.tenant_id,
                maintenance_id=maintenance_id,
                file_name=clean_name,
                storage_key=key,
                content_type=clean_type,
                size_bytes=len(content),
                category=category,
                description=description,
                uploaded_by_user_id=context.actor_id,
            )
            repo.add(attachment)
            session.commit()
            session.refresh(attachment)

        event_bus.publish_dict(
            "maintenance.attachment_added",
            context.tenant_id,
            {"maintenance_id": maintenance_id, "attachment_id": attachment.id, "size_bytes": attachment.size_bytes},
            actor_id=context.actor_id,
        )
        return attachment

    def list_attachments(self, context: TenantContext, maintenance_id: str) -> list[MaintenanceAttachment]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            repo.get(Maintenance, maintenance_id, "maintenance")
            return repo.fetch_all(
                MaintenanceAttachment,
                col(MaintenanceAttachment.maintenance_id) == maintenance_id,
                order_by=col(MaintenanceAttachment.created_at),
            )

    def read_attachment(self, context: TenantContext, attachment_id: str) -> tuple[MaintenanceAttachment, bytes]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            attachment = repo.get(MaintenanceAttachment, attachment_id, "maintenance attachment")
        return attachment, self.storage.get(attachment.storage_key)

    def delete_attachment(self, context: TenantContext, attachment_id: str) -> None:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            attachment = repo.get(MaintenanceAttachment, attachment_id, "maintenance attachment")
            storage_key = attachment.storage_key
            size_bytes = attachment.size_bytes
            maintenance_id = attachment.maintenance_id
            session.delete(attachment)
            self.quota.release(context.tenant_id, ResourceKind.STORAGE_BYTES, size_bytes, session=session)
            session.commit()

        discard_blob(self.storage, storage_key)
        event_bus.publish_dict(
            "maintenance.attachment_deleted",
            context.tenant_id,
            {"maintenance_id": maintenance_id, "attachment_id": attachment_id, "size_bytes": size_bytes},
            actor_id=context.actor_id,
        )
