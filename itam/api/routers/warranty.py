from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from itam.api.deps import Context, raise_http_error, require_perm
from itam.domain.derived import WarrantyAlertType
from itam.domain.errors import DomainError
from itam.domain.models import (
    WarrantyAlertRead,
    WarrantyAlertSummaryRead,
    WarrantyScanRead,
    WarrantyScanRequest,
)
from itam.domain.permissions import PERM_WARRANTY_READ, PERM_WARRANTY_WRITE
from itam.infra.audit import set_audit_context
from itam.services.warranty_service import WarrantyService

router = APIRouter()


def get_warranty_service() -> WarrantyService:
    return WarrantyService()


Service = Annotated[WarrantyService, Depends(get_warranty_service)]


@router.post(
    "/scan",
    response_model=WarrantyScanRead,
    dependencies=[Depends(require_perm(PERM_WARRANTY_WRITE))],
)
def run_warranty_scan(
    payload: WarrantyScanRequest,
    request: Request,
    context: Context,
    service: Service,
) -> WarrantyScanRead:
    set_audit_context(request, action="warranty.scan")
    try:
        return service.scan(tenant_id=context.tenant_id, today=payload.as_of)
    except DomainError as exc:
        raise_http_error(exc)


@router.get(
    "/alerts",
    response_model=list[WarrantyAlertRead],
    dependencies=[Depends(require_perm(PERM_WARRANTY_READ))],
)
def list_alerts(
    context: Context,
    service: Service,
    alert_type: WarrantyAlertType | None = None,
    acknowledged: bool | None = None,
    asset_id: str | None = None,
) -> list[WarrantyAlertRead]:
    rows = service.list_alerts(context, alert_type=alert_type, acknowledged=acknowledged, asset_id=asset_id)
    return [WarrantyAlertRead.model_validate(item) for item in rows]


@router.get(
    "/alerts/summary",
    response_model=WarrantyAlertSummaryRead,
    dependencies=[Depends(require_perm(PERM_WARRANTY_READ))],
)
def alert_summary(context: Context, service: Service) -> WarrantyAlertSummaryRead:
    return service.summary(context)


@router.get(
    "/alerts/{alert_id}",
    response_model=WarrantyAlertRead,
    dependencies=[Depends(require_perm(PERM_WARRANTY_READ))],
)
def get_alert(alert_id: str, context: Context, service: Service) -> WarrantyAlertRead:
    try:
        return WarrantyAlertRead.model_validate(service.get_alert(context, alert_id))
    except DomainError as exc:
        raise_http_error(exc)


@router.post(
    "/alerts/{alert_id}/acknowledge",
    response_model=WarrantyAlertRead,
    dependencies=[Depends(require_perm(PERM_WARRANTY_READ))],
)
def acknowledge_alert(alert_id: str, request: Request, context: Context, service: Service) -> WarrantyAlertRead:
    set_audit_context(request, action="warranty.alert.acknowledge", detail={"what": {"alert_id": alert_id}})
    try:
        return WarrantyAlertRead.model_validate(service.acknowledge(context, alert_id))
    except DomainError as exc:
        raise_http_error(exc)
