from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, Response, status

from itam.api.deps import Context, content_disposition, raise_http_error, require_perm
from itam.domain.errors import DomainError
from itam.domain.models import (
    AssetAssignmentRead,
    AssetAssignRequest,
    AssetCreate,
    AssetLostRequest,
    AssetRead,
    AssetRecoverRequest,
    AssetRetireRequest,
    AssetUpdate,
    AttachmentCategory,
    AttachmentRead,
    DeviceType,
)
from itam.domain.permissions import PERM_ASSET_READ, PERM_ASSET_WRITE
from itam.domain.state_machine import AssetStatus
from itam.infra.audit import set_audit_context
from itam.services.asset_service import AssetService
from itam.services.assignment_service import AssignmentService
from itam.services.attachment_service import AttachmentService
from itam.services.blob_storage import BlobStorageError

router = APIRouter()


def get_asset_service() -> AssetService:
    return AssetService()


def get_assignment_service() -> AssignmentService:
    return AssignmentService()


def get_attachment_service() -> AttachmentService:
    return AttachmentService()


Service = Annotated[AssetService, Depends(get_asset_service)]
Assignments = Annotated[AssignmentService, Depends(get_assignment_service)]
Attachments = Annotated[AttachmentService, Depends(get_attachment_service)]


@router.post(
    "",
    response_model=AssetRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
def create_asset(payload: AssetCreate, request: Request, context: Context, service: Service) -> AssetRead:
    set_audit_context(request, action="asset.create", detail={"what": {"device_type": payload.device_type.value}})
    try:
        return AssetRead.model_validate(service.create_asset(context, payload))
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "",
    response_model=list[AssetRead],
    dependencies=[Depends(require_perm(PERM_ASSET_READ))],
)
def list_assets(
    context: Context,
    service: Service,
    status: AssetStatus | None = None,
    device_type: DeviceType | None = None,
    assigned_to_user_id: str | None = None,
    q: str | None = None,
) -> list[AssetRead]:
    rows = service.list_assets(
        context,
        status=status,
        device_type=device_type,
        assigned_to_user_id=assigned_to_user_id,
        search=q,
    )
    return [AssetRead.model_validate(item) for item in rows]


@router.get(
    "/{asset_id}",
    response_model=AssetRead,
    dependencies=[Depends(require_perm(PERM_ASSET_READ))],
)
def get_asset(asset_id: str, context: Context, service: Service) -> AssetRead:
    try:
        return AssetRead.model_validate(service.get_asset(context, asset_id))
    except DomainError as exc:
        raise_http_error(exc)


@router.patch(
    "/{asset_id}",
    response_model=AssetRead,
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
def update_asset(asset_id: str, payload: AssetUpdate, context: Context, service: Service) -> AssetRead:
    try:
        return AssetRead.model_validate(service.update_asset(context, asset_id, payload))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/{asset_id}/assign",
    response_model=AssetAssignmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
def assign_asset(
    asset_id: str,
    payload: AssetAssignRequest,
    request: Request,
    context: Context,
    assignments: Assignments,
) -> AssetAssignmentRead:
    set_audit_context(
        request,
        action="asset.assign",
        detail={"what": {"asset_id": asset_id, "user_id": payload.user_id}},
    )
    try:
        row = assignments.assign(context, asset_id, payload.user_id, payload.notes)
        return AssetAssignmentRead.model_validate(row)
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "/{asset_id}/assignments",
    response_model=list[AssetAssignmentRead],
    dependencies=[Depends(require_perm(PERM_ASSET_READ))],
)
def list_asset_assignments(asset_id: str, context: Context, assignments: Assignments) -> list[AssetAssignmentRead]:
    try:
        rows = assignments.list_asset_history(context, asset_id)
    except DomainError as exc:
        raise_http_error(exc)
    return [AssetAssignmentRead.model_validate(item) for item in rows]


@router.post(
    "/{asset_id}/retire",
    response_model=AssetRead,
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
def retire_asset(
    asset_id: str,
    payload: AssetRetireRequest,
    request: Request,
    context: Context,
    service: Service,
) -> AssetRead:
    set_audit_context(request, action="asset.retire", detail={"what": {"asset_id": asset_id}})
    try:
        return AssetRead.model_validate(service.retire_asset(context, asset_id, payload.reason))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/{asset_id}/report-lost",
    response_model=AssetRead,
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
def report_asset_lost(
    asset_id: str,
    payload: AssetLostRequest,
    request: Request,
    context: Context,
    service: Service,
) -> AssetRead:
    set_audit_context(request, action="asset.report_lost", detail={"what": {"asset_id": asset_id}})
    try:
        return AssetRead.model_validate(service.report_lost(context, asset_id, payload.notes))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/{asset_id}/recover",
    response_model=AssetRead,
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
def recover_asset(
    asset_id: str,
    payload: AssetRecoverRequest,
    request: Request,
    context: Context,
    service: Service,
) -> AssetRead:
    set_audit_context(request, action="asset.recover", detail={"what": {"asset_id": asset_id}})
    try:
        row = service.recover_asset(context, asset_id, confirm=payload.confirm, location=payload.location)
        return AssetRead.model_validate(row)
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/{asset_id}/attachments",
    response_model=AttachmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
async def upload_attachment(
    asset_id: str,
    request: Request,
    context: Context,
    attachments: Attachments,
    file_name: Annotated[str, Header(alias="X-File-Name")],
    content_type: Annotated[str, Header(alias="Content-Type")] = "application/octet-stream",
    category: AttachmentCategory = AttachmentCategory.OTHER,
    description: str | None = None,
) -> AttachmentRead:
    set_audit_context(
        request,
        action="asset.attachment.upload",
        detail={"what": {"asset_id": asset_id, "file_name": file_name}},
    )
    content = await request.body()
    try:
        row = attachments.upload(
            context,
            asset_id,
            content=content,
            filename=file_name,
            content_type=content_type,
            category=category,
            description=description,
        )
        return AttachmentRead.model_validate(row)
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "/{asset_id}/attachments",
    response_model=list[AttachmentRead],
    dependencies=[Depends(require_perm(PERM_ASSET_READ))],
)
def list_attachments(asset_id: str, context: Context, attachments: Attachments) -> list[AttachmentRead]:
    try:
        rows = attachments.list_attachments(context, asset_id)
    except DomainError as exc:
        raise_http_error(exc)
    return [AttachmentRead.model_validate(item) for item in rows]


@router.get(
    "/attachments/{attachment_id}/content",
    dependencies=[Depends(require_perm(PERM_ASSET_READ))],
)
def download_attachment(attachment_id: str, context: Context, attachments: Attachments) -> Response:
    try:
        attachment, content = attachments.read_content(context, attachment_id)
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
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
def delete_attachment(attachment_id: str, request: Request, context: Context, attachments: Attachments) -> Response:
    set_audit_context(request, action="asset.attachment.delete", detail={"what": {"attachment_id": attachment_id}})
    try:
        attachments.delete_attachment(context, attachment_id)
    except DomainError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
