"""In-app notification fan-out.

Every write here is best-effort: a notification that cannot be stored is
rolled back, logged and counted, and the caller carries on. Business code calls
``send`` or ``broadcast`` after committing its own state change; with a
dispatcher configured the rows are written later, in a fresh session, so the
caller never waits on them and a failed notification never undoes the
operation that triggered it.
"""
import logging
from collections.abc import Callable, Iterable

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from campus.core.dispatch import Dispatcher
from campus.core.errors import NotFoundError
from campus.core.metrics import increment_counter
from campus.core.paging import paginate_query
from campus.db.models.notification import Notification, NotificationType, RelatedRef
from campus.db.models.user import STATUS_ACTIVE, User

logger = logging.getLogger(__name__)


def serialize_notification(item: Notification) -> dict:
    return {
        "id": item.id,
        "userId": item.user_id,
        "type": NotificationType(item.type).value,
        "title": item.title,
        "message": item.message,
        "isRead": bool(item.is_read),
        "relatedId": item.related_id,
        "relatedType": item.related.kind.value if item.related else None,
        "metadata": item.meta_json,
        "createdAt": item.created_at.isoformat() if item.created_at else None,
    }


class Notifier:
    def __init__(
        self,
        db: Session,
        *,
        dispatcher: Dispatcher | None = None,
        session_factory: Callable[[], Session] | None = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.session_factory = session_factory

    @property
    def queued(self) -> bool:
        return self.dispatcher is not None and self.session_factory is not None

    def _persist(self, notification: Notification) -> None:
        self.db.add(notification)
        self.db.commit()

    def notify(
        self,
        user_id: int,
        type: NotificationType,
        title: str,
        message: str,
        *,
        related: RelatedRef | None = None,
        metadata: dict | None = None,
    ) -> Notification | None:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            is_read=False,
            meta_json=metadata,
        )
        notification.related = related
        try:
            self._persist(notification)
        except SQLAlchemyError:
            self.db.rollback()
            increment_counter("notifications_failed_total", type=NotificationType(type).value)
            logger.exception("notification_failed user_id=%s type=%s", user_id, NotificationType(type).value)
            return None
        increment_counter("notifications_created_total", type=NotificationType(type).value)
        return notification

    def notify_many(
        self,
        user_ids: Iterable[int],
        type: NotificationType,
        title: str,
        message: str,
        *,
        related: RelatedRef | None = None,
        metadata: dict | None = None,
    ) -> list[Notification]:
        created: list[Notification] = []
        for user_id in sorted(set(user_ids)):
            notification = self.notify(user_id, type, title, message, related=related, metadata=metadata)
            if notification is not None:
                created.append(notification)
        return created

    def eligible_user_ids(self, *, exclude_user_id: int | None = None) -> list[int]:
        q = self.db.query(User.id).filter(User.is_verified.is_(True), User.status == STATUS_ACTIVE)
        if exclude_user_id is not None:
            q = q.filter(User.id != exclude_user_id)
        return [row[0] for row in q.all()]

    def notify_all_eligible(
        self,
        type: NotificationType,
        title: str,
        message: str,
        *,
        related: RelatedRef | None = None,
        metadata: dict | None = None,
        exclude_user_id: int | None = None,
    ) -> list[Notification]:
        user_ids = self.eligible_user_ids(exclude_user_id=exclude_user_id)
        created = self.notify_many(user_ids, type, title, message, related=related, metadata=metadata)
        logger.info(
            "notification_broadcast type=%s eligible=%s created=%s",
            NotificationType(type).value,
            len(user_ids),
            len(created),
        )
        return created

    def send(
        self,
        user_id: int,
        type: NotificationType,
        title: str,
        message: str,
        *,
        related: RelatedRef | None = None,
        metadata: dict | None = None,
    ) -> None:
        if not self.queued:
            self.notify(user_id, type, title, message, related=related, metadata=metadata)
            return
        self.dispatcher.dispatch(
            f"notification.{NotificationType(type).value}",
            deliver_notification,
            self.session_factory,
            user_id,
            type,
            title,
            message,
            related=related,
            metadata=metadata,
        )

    def broadcast(
        self,
        type: NotificationType,
        title: str,
        message: str,
        *,
        related: RelatedRef | None = None,
        metadata: dict | None = None,
        exclude_user_id: int | None = None,
    ) -> None:
        """Notify every verified, active user except ``exclude_user_id``."""
        if not self.queued:
            self.notify_all_eligible(
                type, title, message, related=related, metadata=metadata, exclude_user_id=exclude_user_id
            )
            return
        self.dispatcher.dispatch(
            f"notification_broadcast.{NotificationType(type).value}",
            deliver_broadcast,
            self.session_factory,
            type,
            title,
            message,
            related=related,
            metadata=metadata,
            exclude_user_id=exclude_user_id,
        )

    def _owned(self, notification_id: int, owner_id: int) -> Notification:
        item = (
            self.db.query(Notification)
            .filter(Notification.id == notification_id, Notification.user_id == owner_id)
            .first()
        )
        if not item:
            raise NotFoundError("Notification not found")
        return item

    def mark_read(self, notification_id: int, owner_id: int) -> Notification:
        item = self._owned(notification_id, owner_id)
        item.is_read = True
        self.db.commit()
        self.db.refresh(item)
        return item

    def mark_all_read(self, owner_id: int) -> int:
        updated = (
            self.db.query(Notification)
            .filter(Notification.user_id == owner_id, Notification.is_read.is_(False))
            .update({Notification.is_read: True}, synchronize_session=False)
        )
        self.db.commit()
        return int(updated or 0)

    def unread_count(self, owner_id: int) -> int:
        value = (
            self.db.query(func.count(Notification.id))
            .filter(Notification.user_id == owner_id, Notification.is_read.is_(False))
            .scalar()
        )
        return int(value or 0)

    def list_for_owner(
        self,
        owner_id: int,
        *,
        is_read: bool | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Notification], dict]:
        q = self.db.query(Notification).filter(Notification.user_id == owner_id)
        if is_read is not None:
            q = q.filter(Notification.is_read.is_(is_read))
        q = q.order_by(Notification.created_at.desc(), Notification.id.desc())
        return paginate_query(q, page=page, limit=limit)

    def delete(self, notification_id: int, owner_id: int) -> None:
        item = self._owned(notification_id, owner_id)
        self.db.delete(item)
        self.db.commit()


def deliver_notification(
    session_factory: Callable[[], Session],
    user_id: int,
    type: NotificationType,
    title: str,
    message: str,
    *,
    related: RelatedRef | None = None,
    metadata: dict | None = None,
) -> bool:
    with session_factory() as db:
        created = Notifier(db).notify(user_id, type, title, message, related=related, metadata=metadata)
    return created is not None


def deliver_broadcast(
    session_factory: Callable[[], Session],
    type: NotificationType,
    title: str,
    message: str,
    *,
    related: RelatedRef | None = None,
    metadata: dict | None = None,
    exclude_user_id: int | None = None,
) -> bool:
    with session_factory() as db:
        Notifier(db).notify_all_eligible(
            type, title, message, related=related, metadata=metadata, exclude_user_id=exclude_user_id
        )
    return True
