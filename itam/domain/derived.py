"""Pure derivations over stored entity fields.

Nothing here is persisted; every value is recomputed from the row it describes.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Protocol

WARRANTY_EXPIRING_DAYS = 90


class WarrantyStatus(StrEnum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    EXPIRING = "EXPIRING"
    EXPIRED = "EXPIRED"


class WarrantyAlertType(StrEnum):
    EXPIRING = "EXPIRING"
    EXPIRED = "EXPIRED"


class _Named(Protocol):
    name: str | None
    manufacturer: str | None
    model: str | None
    device_type: str


class _Assignment(Protocol):
    assigned_at: datetime
    returned_at: datetime | None


class _Alert(Protocol):
    acknowledged_at: datetime | None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_today() -> date:
    return datetime.now(UTC).date()


def display_name(asset: _Named) -> str:
    if asset.name:
        return asset.name
    manufacturer = asset.manufacturer or "Unknown"
    model = asset.model or str(asset.device_type)
    return f"{manufacturer} {model}".strip()


def warranty_days_remaining(warranty_end_date: date | None, today: date) -> int | None:
    if warranty_end_date is None:
        return None
    return (warranty_end_date - today).days


def classify_warranty(days_remaining: int) -> WarrantyAlertType | None:
    if days_remaining < 0:
        return WarrantyAlertType.EXPIRED
    if days_remaining <= WARRANTY_EXPIRING_DAYS:
        return WarrantyAlertType.EXPIRING
    return None


def warranty_status(warranty_end_date: date | None, today: date) -> WarrantyStatus:
    days = warranty_days_remaining(warranty_end_date, today)
    if days is None:
        return WarrantyStatus.NONE
    alert_type = classify_warranty(days)
    if alert_type is None:
        return WarrantyStatus.ACTIVE
    return WarrantyStatus(alert_type.value)


def is_assignment_active(assignment: _Assignment) -> bool:
    return assignment.returned_at is None


def assignment_duration(assignment: _Assignment, now: datetime | None = None) -> timedelta:
    end = assignment.returned_at or now or datetime.now(UTC)
    return as_utc(end) - as_utc(assignment.assigned_at)


def is_alert_acknowledged(alert: _Alert) -> bool:
    return alert.acknowledged_at is not None
