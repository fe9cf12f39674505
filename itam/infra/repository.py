from __future__ import annotations

import logging
from typing import Any, TypeVar

from sqlalchemy import func, update
from sqlmodel import Session, SQLModel, select
from sqlmodel.sql.expression import SelectOfScalar

from itam.domain.errors import ConcurrentModificationError, NotFoundError, TenantMismatchError
from itam.infra.tenant import TenantContext

logger = logging.getLogger("itam.repository")

ModelT = TypeVar("ModelT", bound=SQLModel)


class TenantScopedRepository:
    """Session wrapper that only reads and writes rows of one tenant.

    Every table it touches must carry ``tenant_id`` and ``id`` columns.
    """

    def __init__(self, session: Session, context: TenantContext) -> None:
        if not isinstance(context, TenantContext):
            raise TypeError("TenantScopedRepository requires a TenantContext")
        self.session = session
        self.context = context

    @property
    def tenant_id(self) -> str:
        return self.context.tenant_id

    def select(self, model: type[ModelT]) -> SelectOfScalar[ModelT]:
        return select(model).where(model.tenant_id == self.tenant_id)  # type: ignore[attr-defined]

    def find(self, model: type[ModelT], entity_id: str) -> ModelT | None:
        statement = self.select(model).where(model.id == entity_id)  # type: ignore[attr-defined]
        return self.session.exec(statement).first()

    def get(self, model: type[ModelT], entity_id: str, label: str) -> ModelT:
        row = self.find(model, entity_id)
        if row is not None:
            return row
        owner = self.session.exec(
            select(model.tenant_id).where(model.id == entity_id)  # type: ignore[attr-defined]
        ).first()
        if owner is not None:
            logger.warning(
                "tenant %s requested %s %s owned by another tenant",
                self.tenant_id,
                label,
                entity_id,
            )
            raise TenantMismatchError(label, self.tenant_id, owner)
        raise NotFoundError(f"{label} not found")

    def fetch_all(self, model: type[ModelT], *criteria: Any, order_by: Any = None) -> list[ModelT]:
        statement = self.select(model)
        for criterion in criteria:
            statement = statement.where(criterion)
        if order_by is not None:
            statement = statement.order_by(order_by)
        return list(self.session.exec(statement).all())

    def count(self, model: type[ModelT], *criteria: Any) -> int:
        statement = (
            select(func.count())
            .select_from(model)
            .where(model.tenant_id == self.tenant_id)  # type: ignore[attr-defined]
        )
        for criterion in criteria:
            statement = statement.where(criterion)
        return int(self.session.exec(statement).one())

    def add(self, entity: ModelT) -> ModelT:
        current = getattr(entity, "tenant_id", None)
        if current is None:
            entity.tenant_id = self.tenant_id  # type: ignore[attr-defined]
        elif current != self.tenant_id:
            raise TenantMismatchError(type(entity).__name__.lower(), self.tenant_id, current)
        self.session.add(entity)
        return entity

    def claim(self, entity: ModelT, label: str) -> None:
        """Bump ``version`` only if no other writer has bumped it since load."""
        model = type(entity)
        loaded = entity.version  # type: ignore[attr-defined]
        result = self.session.execute(
            update(model)
            .where(model.id == entity.id)  # type: ignore[attr-defined]
            .where(model.tenant_id == self.tenant_id)  # type: ignore[attr-defined]
            .where(model.version == loaded)  # type: ignore[attr-defined]
            .values(version=loaded + 1)
            .execution_options(synchronize_session=False)
        )
        if getattr(result, "rowcount", None) != 1:
            logger.warning("lost version race on %s %s at version %s", label, entity.id, loaded)  # type: ignore[attr-defined]
            raise ConcurrentModificationError(label, entity.id)  # type: ignore[attr-defined]
        entity.version = loaded + 1  # type: ignore[attr-defined]
