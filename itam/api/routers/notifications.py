from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from itam.api.deps import Context, raise_http_error
from itam.domain.errors import DomainError
from itam.domain.models import NotificationCountRead, NotificationRead
from itam.services.notification_service import DEFAULT_LIST_LIMIT, NotificationService

router = APIRouter()


def get_notification_service() -> NotificationService:
    return NotificationService()


Service = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    context: Context,
    service: Service,
    unread_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=200)] = DEFAULT_LIST_LIMIT,
) -> list[NotificationRead]:
    rows = service.list_for_user(context, unread_only=unread_only, limit=limit)
    return [NotificationRead.model_validate(item) for item in rows]


@router.get("/count", response_model=NotificationCountRead)
def count_notifications(context: Context, service: Service) -> NotificationCountRead:
    return service.counts(context)


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(notification_id: str, context: Context, service: Service) -> NotificationRead:
    try:
        return NotificationRead.model_validate(service.mark_read(context, notification_id))
    except DomainError as exc:
        raise_http_error(exc)


@router.post("/read-all")
def mark_all_notifications_read(context: Context, service: Service) -> dict[str, int]:
    return {"updated": service.mark_all_read(context)}
