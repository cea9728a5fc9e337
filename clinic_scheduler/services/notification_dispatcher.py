import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_scheduler.core.errors import NotFound, Unavailable
from clinic_scheduler.models.notification import Notification
from clinic_scheduler.services.connection_registry import ConnectionRegistry
from clinic_scheduler.services.directory import DATABASE_UNAVAILABLE

logger = logging.getLogger(__name__)


def notification_payload(notification: Notification) -> dict:
    return {
        'id': notification.id,
        'user_id': notification.user_id,
        'message': notification.message,
        'created_at': notification.created_at.isoformat() if notification.created_at else None,
        'is_read': bool(notification.is_read),
    }


@dataclass
class NotificationDispatcher:
    """Stores notifications and fans them out to live channels.

    The stored row is the source of truth: live delivery is attempted only
    after the row is committed, and a failed or dropped push is never retried.
    """

    db: Session
    registry: ConnectionRegistry
    clock: Callable[[], datetime] = field(default=datetime.now)

    def record(self, user_id: int, message: str) -> Notification:
        """Add a notification to the caller's transaction without committing."""
        notification = Notification(
            user_id=user_id,
            message=message,
            created_at=self.clock(),
            is_read=False,
        )
        self.db.add(notification)
        self.db.flush()
        return notification

    def deliver(self, notifications: Iterable[Notification]) -> int:
        delivered = 0
        for notification in notifications:
            if self.registry.push(notification.user_id, notification_payload(notification)):
                delivered += 1
        return delivered

    def publish(self, user_id: int, message: str) -> Notification:
        try:
            notification = self.record(user_id, message)
            self.db.commit()
            self.db.refresh(notification)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

        self.deliver([notification])
        return notification

    def list_unread(self, user_id: int) -> list[Notification]:
        try:
            return self.db.query(Notification).filter(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            ).order_by(Notification.created_at.desc(), Notification.id.desc()).all()
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

    def list_for_user(self, user_id: int) -> list[Notification]:
        try:
            return self.db.query(Notification).filter(
                Notification.user_id == user_id,
            ).order_by(Notification.created_at.desc(), Notification.id.desc()).all()
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

    def unread_count(self, user_id: int) -> int:
        try:
            return self.db.query(func.count(Notification.id)).filter(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            ).scalar() or 0
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

    def get(self, notification_id: int) -> Notification:
        try:
            notification = self.db.get(Notification, notification_id)
        except SQLAlchemyError as exc:
            raise Unavailable(DATABASE_UNAVAILABLE) from exc
        if notification is None:
            raise NotFound('Notification not found.')
        return notification

    def mark_read(self, notification_id: int, user_id: int | None = None) -> Notification:
        notification = self.get(notification_id)
        # Someone else's notification is reported as missing.
        if user_id is not None and notification.user_id != user_id:
            raise NotFound('Notification not found.')
        if notification.is_read:
            return notification

        try:
            notification.is_read = True
            self.db.commit()
            self.db.refresh(notification)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise Unavailable(DATABASE_UNAVAILABLE) from exc
        return notification

    def mark_all_read(self, user_id: int) -> int:
        try:
            updated = self.db.query(Notification).filter(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            ).update({Notification.is_read: True}, synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise Unavailable(DATABASE_UNAVAILABLE) from exc

        if updated:
            logger.info('Marked %s notifications read for user %s', updated, user_id)
        return updated
