from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, Response, status

from itam.api.deps import Context, content_disposition, raise_http_error, require_perm
from itam.domain.errors import DomainError
from itam.domain.models import (
    MaintenanceAttachmentCategory,
    MaintenanceAttachmentRead,
    MaintenanceCreate,
    MaintenanceDetailRead,
    MaintenanceRead,
    MaintenanceTransitionRequest,
)
from itam.domain.permissions import PERM_MAINTENANCE_READ, PERM_MAINTENANCE_WRITE
from itam.domain.state_machine import MaintenanceStatus
from itam.infra.audit import set_audit_context
from itam.services.blob_storage import BlobStorageError
from itam.services.maintenance_service import MaintenanceService

router = APIRouter()


def get_maintenance_service() -> MaintenanceService:
    return MaintenanceService()


Service = Annotated[MaintenanceService, Depends(get_maintenance_service)]


@router.post(
    "",
    response_model=MaintenanceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_WRITE))],
)
def create_maintenance(
    payload: MaintenanceCreate,
    request: Request,
    context: Context,
    service: Service,
) -> MaintenanceRead:
    set_audit_context(request, action="maintenance.create", detail={"what": {"asset_id": payload.asset_id}})
    try:
        return MaintenanceRead.model_validate(service.create_maintenance(context, payload))
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "",
    response_model=list[MaintenanceRead],
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_READ))],
)
def list_maintenance(
    context: Context,
    service: Service,
    asset_id: str | None = None,
    status: MaintenanceStatus | None = None,
) -> list[MaintenanceRead]:
    try:
        rows = service.list_maintenance(context, asset_id=asset_id, status=status)
    except DomainError as exc:
        raise_http_error(exc)
    return [MaintenanceRead.model_validate(item) for item in rows]


@router.get(
    "/{maintenance_id}",
    response_model=MaintenanceDetailRead,
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_READ))],
)
def get_maintenance(maintenance_id: str, context: Context, service: Service) -> MaintenanceDetailRead:
    try:
        record = service.get_maintenance(context, maintenance_id)
        attachments = service.list_attachments(context, maintenance_id)
    except DomainError as exc:
        raise_http_error(exc)
    return MaintenanceDetailRead(
        maintenance=MaintenanceRead.model_validate(record),
        attachments=[MaintenanceAttachmentRead.model_validate(item) for item in attachments],
    )


@router.post(
    "/{maintenance_id}/start",
    response_model=MaintenanceRead,
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_WRITE))],
)
def start_maintenance(
    maintenance_id: str,
    payload: MaintenanceTransitionRequest,
    request: Request,
    context: Context,
    service: Service,
) -> MaintenanceRead:
    set_audit_context(request, action="maintenance.start", detail={"what": {"maintenance_id": maintenance_id}})
    try:
        return MaintenanceRead.model_validate(service.start(context, maintenance_id, payload.notes))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/{maintenance_id}/complete",
    response_model=MaintenanceRead,
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_WRITE))],
)
def complete_maintenance(
    maintenance_id: str,
    payload: MaintenanceTransitionRequest,
    request: Request,
    context: Context,
    service: Service,
) -> MaintenanceRead:
    set_audit_context(request, action="maintenance.complete", detail={"what": {"maintenance_id": maintenance_id}})
    try:
        return MaintenanceRead.model_validate(service.complete(context, maintenance_id, payload.notes))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/{maintenance_id}/cancel",
    response_model=MaintenanceRead,
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_WRITE))],
)
def cancel_maintenance(
    maintenance_id: str,
    payload: MaintenanceTransitionRequest,
    request: Request,
    context: Context,
    service: Service,
) -> MaintenanceRead:
    set_audit_context(request, action="maintenance.cancel", detail={"what": {"maintenance_id": maintenance_id}})
    try:
        return MaintenanceRead.model_validate(service.cancel(context, maintenance_id, payload.notes))
    except DomainError as exc:
        raise_http_error(exc)


@router.delete(
    "/{maintenance_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_WRITE))],
)
def delete_maintenance(maintenance_id: str, request: Request, context: Context, service: Service) -> Response:
    set_audit_context(request, action="maintenance.delete", detail={"what": {"maintenance_id": maintenance_id}})
    try:
        service.delete_maintenance(context, maintenance_id)
    except DomainError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{maintenance_id}/attachments",
    response_model=MaintenanceAttachmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_WRITE))],
)
async def upload_maintenance_attachment(
    maintenance_id: str,
    request: Request,
    context: Context,
    service: Service,
    file_name: Annotated[str, Header(alias="X-File-Name")],
    content_type: Annotated[str, Header(alias="Content-Type")] = "application/octet-stream",
    category: MaintenanceAttachmentCategory = MaintenanceAttachmentCategory.OTHER,
    description: str | None = None,
) -> MaintenanceAttachmentRead:
    set_audit_context(
        request,
        action="maintenance.attachment.upload",
        detail={"what": {"maintenance_id": maintenance_id, "file_name": file_name}},
    )
    content = await request.body()
    try:
        row = service.add_attachment(
            context,
            maintenance_id,
            content=content,
            filename=file_name,
            content_type=content_type,
            category=category,
            description=description,
        )
        return MaintenanceAttachmentRead.model_validate(row)
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "/attachments/{attachment_id}/content",
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_READ))],
)
def download_maintenance_attachment(attachment_id: str, context: Context, service: Service) -> Response:
    try:
        attachment, content = service.read_attachment(context, attachment_id)
    except (DomainError, BlobStorageError) as exc:
        raise_http_error(exc)
    return Response(
        content=content,
        media_type=attachment.content_type,
        headers={"Content-Disposition": content_disposition(attachment.file_name)},
    )


@router.delete(
    "/attachments/{attachment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_MAINTENANCE_WRITE))],
)
def delete_maintenance_attachment(
    attachment_id: str,
    request: Request,
    context: Context,
    service: Service,
) -> Response:
    set_audit_context(
        request,
        action="maintenance.attachment.delete",
        detail={"what": {"attachment_id": attachment_id}},
    )
    try:
        service.delete_attachment(context, attachment_id)
    except DomainError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
