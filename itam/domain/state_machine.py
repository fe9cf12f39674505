from __future__ import annotations

from enum import StrEnum

from itam.domain.errors import InvalidStateTransitionError


class AssetStatus(StrEnum):
    AVAILABLE = "AVAILABLE"
    IN_USE = "IN_USE"
    MAINTENANCE = "MAINTENANCE"
    RETIRED = "RETIRED"
    LOST = "LOST"


class AssetEvent(StrEnum):
    ASSIGN = "ASSIGN"
    RETURN = "RETURN"
    SEND_TO_MAINTENANCE = "SEND_TO_MAINTENANCE"
    COMPLETE_MAINTENANCE = "COMPLETE_MAINTENANCE"
    RETIRE = "RETIRE"
    REPORT_LOST = "REPORT_LOST"
    RECOVER = "RECOVER"


# event -> (valid source states, target state); a None target restores the
# status the asset held before it entered maintenance.
ASSET_EVENT_TRANSITIONS: dict[AssetEvent, tuple[frozenset[AssetStatus], AssetStatus | None]] = {
    AssetEvent.ASSIGN: (frozenset({AssetStatus.AVAILABLE}), AssetStatus.IN_USE),
    AssetEvent.RETURN: (frozenset({AssetStatus.IN_USE}), AssetStatus.AVAILABLE),
    AssetEvent.SEND_TO_MAINTENANCE: (
        frozenset({AssetStatus.AVAILABLE, AssetStatus.IN_USE}),
        AssetStatus.MAINTENANCE,
    ),
    AssetEvent.COMPLETE_MAINTENANCE: (frozenset({AssetStatus.MAINTENANCE}), None),
    AssetEvent.RETIRE: (
        frozenset(
            {
                AssetStatus.AVAILABLE,
                AssetStatus.IN_USE,
                AssetStatus.MAINTENANCE,
                AssetStatus.LOST,
            }
        ),
        AssetStatus.RETIRED,
    ),
    AssetEvent.REPORT_LOST: (
        frozenset({AssetStatus.AVAILABLE, AssetStatus.IN_USE, AssetStatus.MAINTENANCE}),
        AssetStatus.LOST,
    ),
    AssetEvent.RECOVER: (frozenset({AssetStatus.LOST}), AssetStatus.AVAILABLE),
}

RESTORABLE_ASSET_STATES = frozenset({AssetStatus.AVAILABLE, AssetStatus.IN_USE})


def can_asset_transition(source: AssetStatus, event: AssetEvent) -> bool:
    sources, _ = ASSET_EVENT_TRANSITIONS[event]
    return source in sources


def resolve_asset_transition(
    source: AssetStatus,
    event: AssetEvent,
    prior: AssetStatus | None = None,
) -> AssetStatus:
    sources, target = ASSET_EVENT_TRANSITIONS[event]
    if target is None:
        target = prior if prior in RESTORABLE_ASSET_STATES else AssetStatus.AVAILABLE
    if source not in sources:
        raise InvalidStateTransitionError(source.value, target.value)
    return target


class MaintenanceStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


MAINTENANCE_ALLOWED_TRANSITIONS: dict[MaintenanceStatus, set[MaintenanceStatus]] = {
    MaintenanceStatus.PENDING: {MaintenanceStatus.IN_PROGRESS, MaintenanceStatus.CANCELLED},
    MaintenanceStatus.IN_PROGRESS: {MaintenanceStatus.COMPLETED, MaintenanceStatus.CANCELLED},
    MaintenanceStatus.COMPLETED: set(),
    MaintenanceStatus.CANCELLED: set(),
}

OPEN_MAINTENANCE_STATES = frozenset({MaintenanceStatus.PENDING, MaintenanceStatus.IN_PROGRESS})


def can_maintenance_transition(source: MaintenanceStatus, target: MaintenanceStatus) -> bool:
    return target in MAINTENANCE_ALLOWED_TRANSITIONS.get(source, set())


def ensure_maintenance_transition(source: MaintenanceStatus, target: MaintenanceStatus) -> None:
    if not can_maintenance_transition(source, target):
        raise InvalidStateTransitionError(source.value, target.value)
