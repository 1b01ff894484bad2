"""
Append-only change log for tasks.

Each mutation is diffed field by field against the stored task and turned
into zero or more TaskHistory rows. Rows are added to the caller's session
and committed together with the task change.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ("title", "description", "status", "priority", "assigned_to", "created_by", "deadline")


def _plain(value: Any) -> Any:
    """JSON-safe form of a column value."""
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, list):
        return list(value)
    return value


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; treat them as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _same(field: str, old: Any, new: Any) -> bool:
    if field == "deadline":
        return _as_utc(old) == _as_utc(new)
    if field == "assigned_to":
        return sorted(old or []) == sorted(new or [])
    return _plain(old) == _plain(new)


def snapshot(task: models.Task) -> Dict[str, Any]:
    return {field: _plain(getattr(task, field)) for field in SNAPSHOT_FIELDS}


def _entry(task_id: int, user_id: int, change_type: models.ChangeType, description: str,
           previous: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> models.TaskHistory:
    return models.TaskHistory(
        task_id=task_id,
        change_type=change_type.value,
        changed_by=user_id,
        description=description,
        previous_values=previous,
        new_values=new,
    )


def record_created(db: Session, task: models.Task, user_id: int) -> models.TaskHistory:
    entry = _entry(task.id, user_id, models.ChangeType.CREATED, "Task created", None, snapshot(task))
    db.add(entry)
    return entry


def record_deleted(db: Session, task: models.Task, user_id: int) -> models.TaskHistory:
    entry = _entry(task.id, user_id, models.ChangeType.DELETED, "Task deleted", snapshot(task), None)
    db.add(entry)
    return entry


def diff_changes(task: models.Task, changes: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Compare requested values against the stored task.

    Returns:
        {field: {"old": ..., "new": ...}} for fields whose value really changes
    """
    diff = {}
    for field, new_value in changes.items():
        old_value = getattr(task, field)
        if not _same(field, old_value, new_value):
            diff[field] = {"old": old_value, "new": new_value}
    return diff


def record_changes(db: Session, task: models.Task, user_id: int,
                   diff: Dict[str, Dict[str, Any]]) -> List[models.TaskHistory]:
    """
    Turn a field diff into history rows.

    - status      -> one STATUS_CHANGED row
    - assigned_to -> ASSIGNED, or UNASSIGNED when the list becomes empty
    - priority    -> PRIORITY_CHANGED
    - deadline    -> DEADLINE_CHANGED
    - title and/or description -> one UPDATED row covering both
    """
    entries = []

    def add(change_type, description, fields):
        previous = {f: _plain(diff[f]["old"]) for f in fields}
        new = {f: _plain(diff[f]["new"]) for f in fields}
        entries.append(_entry(task.id, user_id, change_type, description, previous, new))

    if "status" in diff:
        add(
            models.ChangeType.STATUS_CHANGED,
            f"Status changed from {_plain(diff['status']['old'])} to {_plain(diff['status']['new'])}",
            ["status"],
        )

    if "assigned_to" in diff:
        if diff["assigned_to"]["new"]:
            add(models.ChangeType.ASSIGNED, "Task assignment changed", ["assigned_to"])
        else:
            add(models.ChangeType.UNASSIGNED, "Task unassigned", ["assigned_to"])

    if "priority" in diff:
        add(
            models.ChangeType.PRIORITY_CHANGED,
            f"Priority changed from {_plain(diff['priority']['old'])} to {_plain(diff['priority']['new'])}",
            ["priority"],
        )

    if "deadline" in diff:
        add(models.ChangeType.DEADLINE_CHANGED, "Deadline changed", ["deadline"])

    text_fields = [f for f in ("title", "description") if f in diff]
    if text_fields:
        add(models.ChangeType.UPDATED, f"Updated {' and '.join(text_fields)}", text_fields)

    for entry in entries:
        db.add(entry)
    logger.debug(f"Recorded {len(entries)} history entries for task {task.id}")
    return entries


def list_history(db: Session, task_id: int) -> List[models.TaskHistory]:
    return (
        db.query(models.TaskHistory)
        .filter(models.TaskHistory.task_id == task_id)
        .order_by(models.TaskHistory.created_at.desc(), models.TaskHistory.id.desc())
        .all()
    )
