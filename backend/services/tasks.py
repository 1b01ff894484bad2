"""
Task persistence with history logging.

Every function takes the acting user's id and enforces the access rule from
auth/permissions.py; tasks the user may not see are reported as not found.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

import models
import schemas
from auth.permissions import require_task_access, require_task_creator, visible_tasks
from errors import NotFoundError
from services import task_history

logger = logging.getLogger(__name__)


def get_task(db: Session, task_id: int, user_id: int) -> models.Task:
    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    return require_task_access(task, task_id, user_id)


def list_tasks(
    db: Session,
    user_id: int,
    page: int = 1,
    size: int = 10,
    status: Optional[schemas.TaskStatus] = None,
) -> Tuple[List[models.Task], int]:
    """
    Page through the tasks visible to a user, newest first.

    Returns:
        (tasks on the requested page, total matching tasks)
    """
    status_filter = models.TaskStatus(status.value) if status is not None else None
    matching = visible_tasks(db, user_id, status_filter)

    total = len(matching)
    start = (page - 1) * size
    tasks = matching[start:start + size]
    logger.debug(f"Listed {len(tasks)} of {total} tasks for user {user_id}")
    return tasks, total


def create_task(db: Session, data: schemas.TaskCreate, user_id: int) -> models.Task:
    task = models.Task(
        title=data.title,
        description=data.description,
        status=models.TaskStatus(data.status.value),
        priority=models.TaskPriority(data.priority.value),
        assigned_to=_check_assignees(db, data.assigned_to),
        deadline=data.deadline,
        created_by=user_id,
    )
    db.add(task)
    db.flush()
    task_history.record_created(db, task, user_id)
    db.commit()
    db.refresh(task)

    logger.info(f"Task created: {task.id} by user {user_id}")
    return task


def update_task(
    db: Session, task_id: int, data: schemas.TaskUpdate, user_id: int
) -> Tuple[models.Task, Dict[str, Dict[str, Any]]]:
    """
    Apply the fields present in the update and log what changed.

    Last write wins; there is no version check.

    Returns:
        (updated task, {field: {"old", "new"}} of the fields that changed)
    """
    task = get_task(db, task_id, user_id)

    changes = data.model_dump(exclude_unset=True)
    if changes.get("title") is None:
        changes.pop("title", None)
    for field in ("status", "priority"):
        if field in changes:
            if changes[field] is None:
                changes.pop(field)
            else:
                enum_cls = models.TaskStatus if field == "status" else models.TaskPriority
                changes[field] = enum_cls(changes[field].value)
    if "assigned_to" in changes:
        changes["assigned_to"] = _check_assignees(db, changes["assigned_to"] or [])

    diff = task_history.diff_changes(task, changes)
    if not diff:
        logger.debug(f"Update of task {task_id} changed nothing")
        return task, diff

    for field, values in diff.items():
        setattr(task, field, values["new"])
    task_history.record_changes(db, task, user_id, diff)
    db.commit()
    db.refresh(task)

    logger.info(f"Task updated: {task_id} fields={sorted(diff)} by user {user_id}")
    return task, diff


def assign_task(
    db: Session, task_id: int, assigned_to: List[int], user_id: int
) -> Tuple[models.Task, Dict[str, Dict[str, Any]]]:
    """
    Replace a task's assignees.

    Returns:
        (task, field diff as from update_task; empty if the assignees did not change)
    """
    return update_task(db, task_id, schemas.TaskUpdate(assigned_to=assigned_to), user_id)


def delete_task(db: Session, task_id: int, user_id: int) -> Dict[str, Any]:
    """
    Delete a task and its comments. Only the creator may delete.

    Returns:
        Snapshot of the task as it was before deletion
    """
    task = require_task_creator(get_task(db, task_id, user_id), user_id)
    deleted = schemas.Task.model_validate(task).model_dump(mode="json")

    task_history.record_deleted(db, task, user_id)
    db.delete(task)
    db.commit()

    logger.info(f"Task deleted: {task_id} by user {user_id}")
    return deleted


def get_history(db: Session, task_id: int, user_id: int) -> List[models.TaskHistory]:
    get_task(db, task_id, user_id)
    return task_history.list_history(db, task_id)


def _check_assignees(db: Session, user_ids: List[int]) -> List[int]:
    """Deduplicate assignee ids and make sure each one is a real user."""
    user_ids = _unique(user_ids)
    if not user_ids:
        return user_ids

    found = {uid for (uid,) in db.query(models.User.id).filter(models.User.id.in_(user_ids))}
    missing = [uid for uid in user_ids if uid not in found]
    if missing:
        logger.info(f"Assignees not found: {missing}")
        raise NotFoundError(f"Users with IDs {missing} not found")
    return user_ids


def _unique(user_ids: List[int]) -> List[int]:
    seen = []
    for uid in user_ids:
        if uid not in seen:
            seen.append(uid)
    return seen
