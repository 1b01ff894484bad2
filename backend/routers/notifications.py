"""
Notification endpoints for the authenticated user.

Mark-as-read and delete report their outcome in the body instead of
failing: repeating them is harmless and answers 200 with success=false.
"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

import schemas
from auth.dependencies import get_current_user
from database import get_db
from responses import envelope, pagination
from services import notifications as notification_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _dump(notifications) -> list:
    return [schemas.Notification.model_validate(n).model_dump(mode="json") for n in notifications]


@router.get("")
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notifications, total = notification_store.list_notifications(db, current_user.user_id, page, limit)
    return envelope(_dump(notifications), pagination(page, limit, total))


@router.get("/unread")
async def list_unread_notifications(
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return envelope(_dump(notification_store.list_unread(db, current_user.user_id)))


@router.get("/unread/count")
async def count_unread_notifications(
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return envelope({"count": notification_store.unread_count(db, current_user.user_id)})


@router.patch("/read-all")
async def mark_all_notifications_read(
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    count = notification_store.mark_all_as_read(db, current_user.user_id)
    return envelope({"updated": count})


@router.patch("/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if notification_store.mark_as_read(db, notification_id, current_user.user_id):
        return envelope({"id": notification_id, "message": "Notification marked as read"})
    return envelope({"id": notification_id, "message": "Notification not found or already read"}, success=False)


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if notification_store.delete_notification(db, notification_id, current_user.user_id):
        logger.info(f"Notification {notification_id} deleted by user {current_user.user_id}")
        return envelope({"id": notification_id, "message": "Notification deleted"})
    return envelope({"id": notification_id, "message": "Notification not found"}, success=False)
