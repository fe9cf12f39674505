from __future__ import annotations


class DomainError(Exception):
    pass


class NotFoundError(DomainError):
    pass


class TenantMismatchError(NotFoundError):
    """Target exists but belongs to another tenant.

    Reported with the same message as a missing entity so callers cannot learn
    whether other tenants own an id.
    """

    def __init__(self, resource: str, expected_tenant: str, actual_tenant: str) -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource
        self.expected_tenant = expected_tenant
        self.actual_tenant = actual_tenant


class ConflictError(DomainError):
    pass


class InvalidInputError(DomainError):
    pass


class QuotaDeniedError(DomainError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TenantInactiveError(QuotaDeniedError):
    pass


class QuotaExceededError(QuotaDeniedError):
    def __init__(self, resource_kind: str, limit: int, attempted: int) -> None:
        super().__init__(f"{resource_kind} quota exceeded: limit {limit}, attempted {attempted}")
        self.resource_kind = resource_kind
        self.limit = limit
        self.attempted = attempted


class InvalidStateTransitionError(ConflictError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"invalid state transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


class AlreadyAssignedError(ConflictError):
    def __init__(self, asset_id: str) -> None:
        super().__init__(f"asset {asset_id} already has an active assignment")
        self.asset_id = asset_id


class NotActiveError(ConflictError):
    def __init__(self, assignment_id: str) -> None:
        super().__init__(f"assignment {assignment_id} is already returned")
        self.assignment_id = assignment_id


class AlreadyAcknowledgedError(ConflictError):
    def __init__(self, alert_id: str) -> None:
        super().__init__(f"warranty alert {alert_id} already acknowledged")
        self.alert_id = alert_id


class ConcurrentModificationError(ConflictError):
    def __init__(self, resource: str, entity_id: str) -> None:
        super().__init__(f"{resource} {entity_id} was modified concurrently")
        self.resource = resource
        self.entity_id = entity_id


class AuthenticationError(DomainError):
    pass
