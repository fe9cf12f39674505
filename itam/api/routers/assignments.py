from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from itam.api.deps import Context, raise_http_error, require_perm
from itam.domain.errors import DomainError
from itam.domain.models import AssetAssignmentRead, AssetReturnRequest
from itam.domain.permissions import PERM_ASSET_READ, PERM_ASSET_WRITE
from itam.infra.audit import set_audit_context
from itam.services.assignment_service import AssignmentService

router = APIRouter()


def get_assignment_service() -> AssignmentService:
    return AssignmentService()


Service = Annotated[AssignmentService, Depends(get_assignment_service)]


@router.get(
    "/{assignment_id}",
    response_model=AssetAssignmentRead,
    dependencies=[Depends(require_perm(PERM_ASSET_READ))],
)
def get_assignment(assignment_id: str, context: Context, service: Service) -> AssetAssignmentRead:
    try:
        return AssetAssignmentRead.model_validate(service.get_assignment(context, assignment_id))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/{assignment_id}/return",
    response_model=AssetAssignmentRead,
    dependencies=[Depends(require_perm(PERM_ASSET_WRITE))],
)
def return_assignment(
    assignment_id: str,
    payload: AssetReturnRequest,
    request: Request,
    context: Context,
    service: Service,
) -> AssetAssignmentRead:
    set_audit_context(
        request,
        action="asset.return",
        detail={"what": {"assignment_id": assignment_id, "condition": payload.condition.value}},
    )
    try:
        row = service.return_asset(context, assignment_id, payload.condition, payload.notes)
        return AssetAssignmentRead.model_validate(row)
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "/users/{user_id}",
    response_model=list[AssetAssignmentRead],
    dependencies=[Depends(require_perm(PERM_ASSET_READ))],
)
def list_user_assignments(
    user_id: str,
    context: Context,
    service: Service,
    active_only: bool = False,
) -> list[AssetAssignmentRead]:
    try:
        rows = service.list_user_assignments(context, user_id, active_only=active_only)
    except DomainError as exc:
        raise_http_error(exc)
    return [AssetAssignmentRead.model_validate(item) for item in rows]
