from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import case, or_, update
from sqlmodel import Session, col

from itam.domain.derived import as_utc
from itam.domain.errors import (
    InvalidInputError,
    NotFoundError,
    QuotaDeniedError,
    QuotaExceededError,
    TenantInactiveError,
)
from itam.domain.models import Tenant, now_utc
from itam.domain.quotas import USAGE_COLUMNS, QuotaAllowed, QuotaDecision, QuotaDenied, ResourceKind
from itam.infra.db import get_engine

logger = logging.getLogger("itam.quota")

DENY_TENANT_INACTIVE = "tenant inactive"
DENY_SUBSCRIPTION_EXPIRED = "subscription expired"
DENY_QUOTA_EXCEEDED = "quota exceeded"


class QuotaService:
    """Per-tenant usage counters guarded by increment-with-ceiling updates.

    Passing ``session`` runs the counter change inside the caller's transaction;
    otherwise the change is committed immediately.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def try_reserve(
        self,
        tenant_id: str,
        resource_kind: ResourceKind,
        delta: int,
        session: Session | None = None,
    ) -> QuotaDecision:
        if delta < 0:
            raise InvalidInputError("quota delta must not be negative")
        if session is not None:
            return self._try_reserve(session, tenant_id, resource_kind, delta)
        with self._session() as own_session:
            decision = self._try_reserve(own_session, tenant_id, resource_kind, delta)
            own_session.commit()
            return decision

    def _try_reserve(
        self,
        session: Session,
        tenant_id: str,
        resource_kind: ResourceKind,
        delta: int,
    ) -> QuotaDecision:
        current_name, limit_name = USAGE_COLUMNS[resource_kind]
        current_col = getattr(Tenant, current_name)
        limit_col = getattr(Tenant, limit_name)
        now = now_utc()
        statement = (
            update(Tenant)
            .where(col(Tenant.id) == tenant_id)
            .where(col(Tenant.is_active).is_(True))
            .where(or_(col(Tenant.subscription_end_at).is_(None), col(Tenant.subscription_end_at) > now))
            .where(current_col + delta <= limit_col)
            .values({current_name: current_col + delta, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        result = session.execute(statement)
        if getattr(result, "rowcount", None) == 1:
            return QuotaAllowed(resource_kind=resource_kind, delta=delta)

        tenant = session.get(Tenant, tenant_id, populate_existing=True)
        if tenant is None:
            raise NotFoundError("tenant not found")
        current = int(getattr(tenant, current_name))
        limit = int(getattr(tenant, limit_name))
        if not tenant.is_active:
            reason = DENY_TENANT_INACTIVE
        elif tenant.subscription_end_at is not None and as_utc(tenant.subscription_end_at) <= now:
            reason = DENY_SUBSCRIPTION_EXPIRED
        else:
            reason = DENY_QUOTA_EXCEEDED
        logger.warning(
            "quota denied for tenant %s: %s %s (current=%s delta=%s limit=%s)",
            tenant_id,
            resource_kind.value,
            reason,
            current,
            delta,
            limit,
        )
        return QuotaDenied(
            resource_kind=resource_kind,
            reason=reason,
            limit=limit,
            attempted=current + delta,
        )

    def reserve(
        self,
        tenant_id: str,
        resource_kind: ResourceKind,
        delta: int,
        session: Session | None = None,
    ) -> QuotaAllowed:
        decision = self.try_reserve(tenant_id, resource_kind, delta, session=session)
        if isinstance(decision, QuotaAllowed):
            return decision
        if decision.reason == DENY_QUOTA_EXCEEDED:
            raise QuotaExceededError(resource_kind.value, decision.limit, decision.attempted)
        if decision.reason == DENY_TENANT_INACTIVE:
            raise TenantInactiveError(decision.reason)
        raise QuotaDeniedError(decision.reason)

    def release(
        self,
        tenant_id: str,
        resource_kind: ResourceKind,
        delta: int,
        session: Session | None = None,
    ) -> None:
        if delta < 0:
            raise InvalidInputError("quota delta must not be negative")
        if delta == 0:
            return
        if session is not None:
            self._release(session, tenant_id, resource_kind, delta)
            return
        with self._session() as own_session:
            self._release(own_session, tenant_id, resource_kind, delta)
            own_session.commit()

    def _release(self, session: Session, tenant_id: str, resource_kind: ResourceKind, delta: int) -> None:
        current_name, _ = USAGE_COLUMNS[resource_kind]
        current_col = getattr(Tenant, current_name)
        statement = (
            update(Tenant)
            .where(col(Tenant.id) == tenant_id)
            .values(
                {
                    current_name: case((current_col - delta < 0, 0), else_=current_col - delta),
                    "updated_at": now_utc(),
                }
            )
            .execution_options(synchronize_session=False)
        )
        result = session.execute(statement)
        if not getattr(result, "rowcount", None):
            logger.warning("quota release skipped, tenant %s not found", tenant_id)

    @contextmanager
    def reservation(
        self,
        tenant_id: str,
        resource_kind: ResourceKind,
        delta: int,
    ) -> Iterator[QuotaAllowed]:
        """Reserve up front and give the units back if the body raises."""
        allowed = self.reserve(tenant_id, resource_kind, delta)
        try:
            yield allowed
        except Exception:
            logger.info(
                "releasing %s %s reserved for tenant %s after failure",
                delta,
                resource_kind.value,
                tenant_id,
            )
            self.release(tenant_id, resource_kind, delta)
            raise
