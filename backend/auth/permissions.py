"""
Task-level permission checking utilities.

Access rule:
- a user can see, update, assign and comment on a task they created or are
  assigned to;
- only the creator can delete a task;
- only the author can delete a comment.

Anything a user may not see is reported as NOT_FOUND, so task ids owned by
other users are not revealed.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import or_, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import Comment, Task, TaskStatus

logger = logging.getLogger(__name__)


def is_task_member(created_by: Optional[int], assigned_to: Optional[Iterable[int]], user_id: int) -> bool:
    """True if the user created the task or is one of its assignees."""
    return created_by == user_id or user_id in (assigned_to or [])


def can_view_task(task: Task, user_id: int) -> bool:
    """
    Check if a user may see a task.

    Example:
        >>> can_view_task(task, 7)
        True
    """
    return is_task_member(task.created_by, task.assigned_to, user_id)


def require_task_access(task: Optional[Task], task_id: int, user_id: int) -> Task:
    """Return the task if the user may see it, else raise NotFoundError."""
    if task is None or not can_view_task(task, user_id):
        logger.info(f"Task {task_id} not found or not visible to user {user_id}")
        raise NotFoundError(f"Task with ID {task_id} not found")
    return task


def require_task_creator(task: Task, user_id: int) -> Task:
    if task.created_by != user_id:
        logger.info(f"User {user_id} is not the creator of task {task.id}, delete denied")
        raise NotFoundError(f"Task with ID {task.id} not found")
    return task


def require_comment_author(comment: Optional[Comment], comment_id: int, user_id: int) -> Comment:
    if comment is None or comment.created_by != user_id:
        logger.info(f"Comment {comment_id} not found or not owned by user {user_id}")
        raise NotFoundError(f"Comment with ID {comment_id} not found")
    return comment


def visibility_clause(user_id: int):
    """SQL filter for tasks a user created or is assigned to, using JSONB containment."""
    return or_(
        Task.created_by == user_id,
        type_coerce(Task.assigned_to, JSONB).contains([user_id]),
    )


def visible_tasks(db: Session, user_id: int, status: Optional[TaskStatus] = None) -> List[Task]:
    """
    All tasks a user may see, newest first.

    On PostgreSQL the access rule runs in the database (assigned_to @> [id]).
    Other dialects have no JSON containment operator, so assignee membership
    is checked in Python there.
    """
    query = db.query(Task)
    if status is not None:
        query = query.filter(Task.status == status)
    query = query.order_by(Task.created_at.desc(), Task.id.desc())

    if db.get_bind().dialect.name == "postgresql":
        return query.filter(visibility_clause(user_id)).all()
    return [task for task in query.all() if can_view_task(task, user_id)]
