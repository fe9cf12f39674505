from __future__ import annotations

import logging
from collections.abc import Iterable

import sqlalchemy as sa
from sqlmodel import Session, col

from itam.domain.errors import NotFoundError
from itam.domain.models import Notification, NotificationCountRead, NotificationType, User, now_utc
from itam.infra.db import get_engine
from itam.infra.events import event_bus
from itam.infra.repository import TenantScopedRepository
from itam.infra.tenant import TenantContext

logger = logging.getLogger("itam.notification")

DEFAULT_LIST_LIMIT = 50


def enqueue_notifications(
    repo: TenantScopedRepository,
    user_ids: Iterable[str],
    *,
    title: str,
    message: str,
    type: NotificationType = NotificationType.INFO,
    link: str | None = None,
    related_entity_type: str | None = None,
    related_entity_id: str | None = None,
) -> list[Notification]:
    """Stage one notification per distinct recipient in the caller's transaction."""
    created: list[Notification] = []
    for user_id in dict.fromkeys(user_ids):
        notification = Notification(
            tenant_id=repo.tenant_id,
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            link=link,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
        )
        repo.add(notification)
        created.append(notification)
    return created


def publish_created(notifications: Iterable[Notification]) -> None:
    for notification in notifications:
        event_bus.publish_dict(
            "notification.created",
            notification.tenant_id,
            {
                "notification_id": notification.id,
                "user_id": notification.user_id,
                "title": notification.title,
                "message": notification.message,
                "type": NotificationType(notification.type).value,
                "link": notification.link,
                "related_entity_type": notification.related_entity_type,
                "related_entity_id": notification.related_entity_id,
            },
        )


class NotificationService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def notify(
        self,
        context: TenantContext,
        user_id: str,
        *,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        link: str | None = None,
    ) -> Notification:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            repo.get(User, user_id, "user")
            (notification,) = enqueue_notifications(repo, [user_id], title=title, message=message, type=type, link=link)
            session.commit()
            session.refresh(notification)
        publish_created([notification])
        return notification

    def list_for_user(
        self,
        context: TenantContext,
        *,
        unread_only: bool = False,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[Notification]:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            statement = repo.select(Notification).where(col(Notification.user_id) == context.actor_id)
            if unread_only:
                statement = statement.where(col(Notification.is_read).is_(False))
            statement = statement.order_by(col(Notification.created_at).desc()).limit(max(1, limit))
            return list(session.exec(statement).all())

    def counts(self, context: TenantContext) -> NotificationCountRead:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            mine = col(Notification.user_id) == context.actor_id
            total = repo.count(Notification, mine)
            unread = repo.count(Notification, mine, col(Notification.is_read).is_(False))
            return NotificationCountRead(unread_count=unread, total_count=total)

    def mark_read(self, context: TenantContext, notification_id: str) -> Notification:
        with self._session() as session:
            repo = TenantScopedRepository(session, context)
            notification = repo.get(Notification, notification_id, "notification")
            if notification.user_id != context.actor_id:
                raise NotFoundError("notification not found")
            if not notification.is_read:
                notification.is_read = True
                notification.read_at = now_utc()
                session.add(notification)
                session.commit()
                session.refresh(notification)
            return notification

    def mark_all_read(self, context: TenantContext) -> int:
        with self._session() as session:
            result = session.execute(
                sa.update(Notification)
                .where(col(Notification.tenant_id) == context.tenant_id)
                .where(col(Notification.user_id) == context.actor_id)
                .where(col(Notification.is_read).is_(False))
                .values(is_read=True, read_at=now_utc())
                .execution_options(synchronize_session=False)
            )
            session.commit()
        updated = int(getattr(result, "rowcount", None) or 0)
        logger.debug("marked %s notifications read for user %s", updated, context.actor_id)
        return updated
