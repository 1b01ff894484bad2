import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy.orm import Session

import models
import schemas
from auth.permissions import require_comment_author
from services.tasks import get_task

logger = logging.getLogger(__name__)


def list_comments(db: Session, task_id: int, user_id: int) -> List[models.Comment]:
    get_task(db, task_id, user_id)
    return (
        db.query(models.Comment)
        .filter(models.Comment.task_id == task_id)
        .order_by(models.Comment.created_at.asc(), models.Comment.id.asc())
        .all()
    )


def create_comment(
    db: Session, task_id: int, data: schemas.CommentCreate, user_id: int
) -> Tuple[models.Comment, models.Task]:
    task = get_task(db, task_id, user_id)
    comment = models.Comment(content=data.content, task_id=task.id, created_by=user_id)
    db.add(comment)
    db.commit()
    db.refresh(comment)

    logger.info(f"Comment {comment.id} added to task {task_id} by user {user_id}")
    return comment, task


def delete_comment(
    db: Session, task_id: int, comment_id: int, user_id: int
) -> Tuple[Dict[str, Any], models.Task]:
    """
    Delete a comment. Only its author may do so, and only on a task they can see.

    Returns:
        (snapshot of the deleted comment, its task)
    """
    task = get_task(db, task_id, user_id)
    comment = (
        db.query(models.Comment)
        .filter(models.Comment.id == comment_id, models.Comment.task_id == task_id)
        .first()
    )
    require_comment_author(comment, comment_id, user_id)
    deleted = schemas.Comment.model_validate(comment).model_dump(mode="json")

    db.delete(comment)
    db.commit()

    logger.info(f"Comment {comment_id} deleted from task {task_id} by user {user_id}")
    return deleted, task
