"""
Notification persistence.

Notifications are per-recipient rows; every query is scoped to the
recipient, so one user can never read or mutate another user's rows.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

import models
import schemas
from time_utils import utc_now

logger = logging.getLogger(__name__)


def create_notification(db: Session, data: schemas.NotificationCreate) -> models.Notification:
    notification = models.Notification(
        type=data.type.value,
        title=data.title,
        message=data.message,
        recipient_id=data.recipient_id,
        sender_id=data.sender_id,
        entity_id=data.entity_id,
        entity_type=data.entity_type.value if data.entity_type else None,
        notification_metadata=data.metadata,
        is_read=False,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)

    logger.debug(f"Notification {notification.id} ({notification.type}) stored for user {data.recipient_id}")
    return notification


def _for_user(db: Session, user_id: int):
    return db.query(models.Notification).filter(models.Notification.recipient_id == user_id)


def _newest_first(query):
    return query.order_by(models.Notification.created_at.desc(), models.Notification.id.desc())


def list_notifications(
    db: Session, user_id: int, page: int = 1, limit: int = 20
) -> Tuple[List[models.Notification], int]:
    query = _for_user(db, user_id)
    total = query.count()
    notifications = _newest_first(query).offset((page - 1) * limit).limit(limit).all()
    return notifications, total


def list_unread(db: Session, user_id: int, limit: Optional[int] = None) -> List[models.Notification]:
    query = _newest_first(_for_user(db, user_id).filter(models.Notification.is_read.is_(False)))
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def unread_count(db: Session, user_id: int) -> int:
    return _for_user(db, user_id).filter(models.Notification.is_read.is_(False)).count()


def mark_as_read(db: Session, notification_id: str, user_id: int) -> bool:
    """
    Mark one notification read.

    Returns:
        False if it does not exist, belongs to someone else, or is already read
    """
    notification = (
        _for_user(db, user_id)
        .filter(models.Notification.id == notification_id, models.Notification.is_read.is_(False))
        .first()
    )
    if notification is None:
        logger.debug(f"Notification {notification_id} not unread for user {user_id}")
        return False

    notification.is_read = True
    notification.read_at = utc_now()
    db.commit()
    return True


def mark_all_as_read(db: Session, user_id: int) -> int:
    count = (
        _for_user(db, user_id)
        .filter(models.Notification.is_read.is_(False))
        .update({"is_read": True, "read_at": utc_now()}, synchronize_session=False)
    )
    db.commit()
    logger.info(f"Marked {count} notifications read for user {user_id}")
    return count


def delete_notification(db: Session, notification_id: str, user_id: int) -> bool:
    count = (
        _for_user(db, user_id)
        .filter(models.Notification.id == notification_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return count > 0
