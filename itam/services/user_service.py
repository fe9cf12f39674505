from __future__ import annotations

import hashlib
import logging
import os

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from itam.domain.errors import AuthenticationError, ConflictError, InvalidInputError, NotFoundError
from itam.domain.models import AssetAssignment, BootstrapAdminRequest, Notification, Tenant, User, UserCreate
from itam.domain.permissions import permissions_for
from itam.domain.quotas import ResourceKind
from itam.infra.db import get_engine
from itam.infra.events import event_bus
from itam.infra.repository import TenantScopedRepository
from itam.infra.tenant import TenantContext
from itam.services.quota_service import QuotaService

logger = logging.getLogger("itam.user")


class UserService:
    def __init__(self, quota: QuotaService | None = None) -> None:
        self.quota = quota or QuotaService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "itam-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def _insert_user(self, tenant_id: str, user: User) -> User:
        with self.quota.reservation(tenant_id, ResourceKind.USER, 1), self._session() as session:
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists") from exc
            session.refresh(user)
        return user

    def create_user(self, context: TenantContext, payload: UserCreate) -> User:
        username = payload.username.strip()
        if not username:
            raise InvalidInputError("username is required")
        if not payload.password:
            raise InvalidInputError("password is required")
        user = User(
            tenant_id=context.tenant_id,
            username=username,
            full_name=payload.full_name,
            department=payload.department,
            password_hash=self._hash_password(payload.password),
            is_admin=payload.is_admin,
        )
        user = self._insert_user(context.tenant_id, user)
        logger.info("created user %s in tenant %s", user.id, context.tenant_id)
        event_bus.publish_dict(
            "user.created",
            context.tenant_id,
            {"user_id": user.id, "username": user.username, "is_admin": user.is_admin},
            actor_id=context.actor_id,
        )
        return user

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            if session.get(Tenant, payload.tenant_id) is None:
                raise NotFoundError("tenant not found")
            existing = session.exec(select(User).where(User.tenant_id == payload.tenant_id)).first()
            if existing is not None:
                raise ConflictError("tenant already initialized")

        admin = User(
            tenant_id=payload.tenant_id,
            username=payload.username.strip(),
            full_name=payload.full_name,
            password_hash=self._hash_password(payload.password),
            is_admin=True,
        )
        admin = self._insert_user(payload.tenant_id, admin)
        logger.info("bootstrapped admin %s for tenant %s", admin.id, payload.tenant_id)
        event_bus.publish_dict(
            "user.created",
            payload.tenant_id,
            {"user_id": admin.id, "username": admin.username, "is_admin": True},
        )
        return admin

    def dev_login(self, tenant_id: str, username: str, password: str) -> tuple[User, list[str]]:
        with self._session() as session:
            statement = select(User).where(User.tenant_id == tenant_id).where(User.username == username)
            user = session.exec(statement).first()
            if user is None:
                raise AuthenticationError("invalid credentials")
            if not user.is_active:
                raise AuthenticationError("user disabled")
            if user.password_hash != self._hash_password(password):
                raise AuthenticationError("invalid credentials")
        return user, permissions_for(user.is_admin)

    def list_users(self, context: TenantContext, *, active_only: bool = False) -> list[User]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            criteria = [col(User.is_active).is_(True)] if active_only else []
            return repo.fetch_all(User, *criteria, order_by=col(User.username))

    def get_user(self, context: TenantContext, user_id: str) -> User:
        with self._session() as session:
            return TenantScopedRepository(session, context).get(User, user_id, "user")

    def set_active(self, context: TenantContext, user_id: str, is_active: bool) -> User:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            user = repo.get(User, user_id, "user")
            user.is_active = is_active
            session.add(user)
            session.commit()
            session.refresh(user)

        event_type = "user.activated" if is_active else "user.deactivated"
        event_bus.publish_dict(event_type, context.tenant_id, {"user_id": user.id}, actor_id=context.actor_id)
        return user

    def delete_user(self, context: TenantContext, user_id: str) -> None:
        """Delete an account with no custody history and free its quota unit.

        Users referenced by assignment records are kept for the audit trail and
        can only be deactivated.
        """
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            user = repo.get(User, user_id, "user")
            if user.id == context.actor_id:
                raise ConflictError("cannot delete the calling user")
            referenced = repo.count(
                AssetAssignment,
                (col(AssetAssignment.user_id) == user.id)
                | (col(AssetAssignment.assigned_by_user_id) == user.id)
                | (col(AssetAssignment.returned_by_user_id) == user.id),
            )
            if referenced:
                raise ConflictError("user has assignment history; deactivate instead")
            for notification in repo.fetch_all(Notification, col(Notification.user_id) == user.id):
                session.delete(notification)
            session.delete(user)
            self.quota.release(context.tenant_id, ResourceKind.USER, 1, session=session)
            session.commit()

        logger.info("deleted user %s in tenant %s", user_id, context.tenant_id)
        event_bus.publish_dict("user.deleted", context.tenant_id, {"user_id": user_id}, actor_id=context.actor_id)
