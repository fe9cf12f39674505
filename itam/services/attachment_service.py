from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import PurePosixPath

from sqlmodel import Session, col

from itam.domain.errors import InvalidInputError
from itam.domain.models import Asset, Attachment, AttachmentCategory
from itam.domain.quotas import ResourceKind
from itam.infra.db import get_engine
from itam.infra.events import event_bus
from itam.infra.repository import TenantScopedRepository
from itam.infra.tenant import TenantContext
from itam.services.blob_storage import BlobStorage, LocalBlobStorage
from itam.services.quota_service import QuotaService

logger = logging.getLogger("itam.attachment")

ATTACHMENT_MAX_BYTES = int(os.getenv("ATTACHMENT_MAX_BYTES", str(5 * 1024 * 1024)))
ALLOWED_CONTENT_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
    }
)


def validate_upload(content: bytes, filename: str, content_type: str) -> tuple[str, str]:
    """Return the cleaned (filename, content type) or raise InvalidInputError."""
    clean_name = PurePosixPath(filename.replace("\\", "/")).name.strip()
    if not clean_name:
        raise InvalidInputError("file name is required")
    clean_type = content_type.split(";", 1)[0].strip().lower()
    if clean_type not in ALLOWED_CONTENT_TYPES:
        raise InvalidInputError(f"content type not allowed: {clean_type or 'unknown'}")
    if not content:
        raise InvalidInputError("file is empty")
    if len(content) > ATTACHMENT_MAX_BYTES:
        raise InvalidInputError(f"file exceeds {ATTACHMENT_MAX_BYTES} bytes")
    return clean_name, clean_type


@contextmanager
def stage_upload(
    quota: QuotaService,
    storage: BlobStorage,
    tenant_id: str,
    content: bytes,
    filename: str,
    content_type: str,
) -> Iterator[str]:
    """Reserve storage quota and write the blob; undo both if the body raises."""
    with quota.reservation(tenant_id, ResourceKind.STORAGE_BYTES, len(content)):
        storage_key = storage.put(tenant_id, content, filename, content_type)
        try:
            yield storage_key
        except Exception:
            if not storage.delete(storage_key):
                logger.warning("staged blob %s already gone during rollback", storage_key)
            raise


def discard_blob(storage: BlobStorage, storage_key: str) -> None:
    if not storage.delete(storage_key):
        logger.warning("blob %s was already missing on delete", storage_key)


class AttachmentService:
    def __init__(self, quota: QuotaService | None = None, storage: BlobStorage | None = None) -> None:
        self.quota = quota or QuotaService()
        self.storage = storage or LocalBlobStorage()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def upload(
        self,
        context: TenantContext,
        asset_id: str,
        *,
        content: bytes,
        filename: str,
        content_type: str,
        category: AttachmentCategory = AttachmentCategory.OTHER,
        description: str | None = None,
    ) -> Attachment:
        with self._session() as session:
            TenantScopedRepository(session, context).get(Asset, asset_id, "asset")
        clean_name, clean_type = validate_upload(content, filename, content_type)

        with (
            stage_upload(self.quota, self.storage, context.tenant_id, content, clean_name, clean_type) as key,
            self._session() as session,
        ):
            repo = TenantScopedRepository(session, context)
            attachment = Attachment(
                tenant_id=context.tenant_id,
                asset_id=asset_id,
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

        logger.info("stored attachment %s (%s bytes) for asset %s", attachment.id, attachment.size_bytes, asset_id)
        event_bus.publish_dict(
            "attachment.created",
            context.tenant_id,
            {"attachment_id": attachment.id, "asset_id": asset_id, "size_bytes": attachment.size_bytes},
            actor_id=context.actor_id,
        )
        return attachment

    def list_attachments(self, context: TenantContext, asset_id: str) -> list[Attachment]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            repo.get(Asset, asset_id, "asset")
            return repo.fetch_all(Attachment, col(Attachment.asset_id) == asset_id, order_by=col(Attachment.created_at))

    def get_attachment(self, context: TenantContext, attachment_id: str) -> Attachment:
        with self._session() as session:
            return TenantScopedRepository(session, context).get(Attachment, attachment_id, "attachment")

    def read_content(self, context: TenantContext, attachment_id: str) -> tuple[Attachment, bytes]:
        attachment = self.get_attachment(context, attachment_id)
        return attachment, self.storage.get(attachment.storage_key)

    def delete_attachment(self, context: TenantContext, attachment_id: str) -> None:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            attachment = repo.get(Attachment, attachment_id, "attachment")
            storage_key = attachment.storage_key
            size_bytes = attachment.size_bytes
            session.delete(attachment)
            self.quota.release(context.tenant_id, ResourceKind.STORAGE_BYTES, size_bytes, session=session)
            session.commit()

        discard_blob(self.storage, storage_key)
        event_bus.publish_dict(
            "attachment.deleted",
            context.tenant_id,
            {"attachment_id": attachment_id, "size_bytes": size_bytes},
            actor_id=context.actor_id,
        )
