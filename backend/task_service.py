"""
Task service: broker handlers for task and comment operations.

The gateway never touches task tables directly; it sends a request to one
of the patterns below and receives the serialized result. Every mutation
publishes a notification.* event once its transaction has committed.

Request patterns:
    task.create, task.update, task.delete, task.assign,
    task.get, task.list, task.history,
    comment.create, comment.list, comment.delete

Every request payload carries "user_id", the authenticated caller.
"""

import logging
from typing import Any, Dict

from pydantic import ValidationError as PydanticValidationError

import database
import schemas
from broker import MessageBroker
from errors import ValidationError
from services import comments as comment_store
from services import tasks as task_store

logger = logging.getLogger(__name__)

# Event patterns consumed by the notification service
TASK_CREATED = "notification.task.created"
TASK_UPDATED = "notification.task.updated"
TASK_DELETED = "notification.task.deleted"
TASK_ASSIGNED = "notification.task.assigned"
COMMENT_CREATED = "notification.comment.created"
COMMENT_DELETED = "notification.comment.deleted"


def _dump(model_cls, obj) -> Dict[str, Any]:
    return model_cls.model_validate(obj).model_dump(mode="json")


def parse_payload(model_cls, data: Dict[str, Any]):
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        details = [
            {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError("Validation failed", details=details)


def _require(data: Dict[str, Any], key: str) -> int:
    try:
        return int(data[key])
    except (KeyError, TypeError, ValueError):
        raise ValidationError(f"Missing or invalid {key}")


def _task_event(task: Dict[str, Any], actor_id: int, **extra) -> Dict[str, Any]:
    event = {
        "task_id": task["id"],
        "title": task["title"],
        "actor_id": actor_id,
        "assigned_to": task.get("assigned_to") or [],
        "created_by": task.get("created_by"),
        "task": task,
    }
    event.update(extra)
    return event


class TaskService:
    """Binds task and comment handlers to a broker."""

    def __init__(self, broker: MessageBroker):
        self.broker = broker

    def register(self) -> None:
        handlers = {
            "task.create": self.create_task,
            "task.update": self.update_task,
            "task.delete": self.delete_task,
            "task.assign": self.assign_task,
            "task.get": self.get_task,
            "task.list": self.list_tasks,
            "task.history": self.get_history,
            "comment.create": self.create_comment,
            "comment.list": self.list_comments,
            "comment.delete": self.delete_comment,
        }
        for pattern, handler in handlers.items():
            self.broker.add_handler(pattern, handler)
        logger.info(f"Task service registered {len(handlers)} handlers")

    # ============== Tasks ==============

    async def create_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(data, "user_id")
        task_in = parse_payload(schemas.TaskCreate, data.get("task") or {})
        with database.session_scope() as db:
            task = _dump(schemas.Task, task_store.create_task(db, task_in, user_id))

        await self.broker.emit(TASK_CREATED, _task_event(task, user_id))
        return task

    async def update_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(data, "user_id")
        task_id = _require(data, "task_id")
        # exclude_unset in the service relies on only the sent keys being set
        task_in = parse_payload(schemas.TaskUpdate, data.get("task") or {})
        with database.session_scope() as db:
            task_obj, diff = task_store.update_task(db, task_id, task_in, user_id)
            task = _dump(schemas.Task, task_obj)

        if diff:
            await self._emit_update(task, user_id, diff)
        return task

    async def assign_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(data, "user_id")
        task_id = _require(data, "task_id")
        assign_in = parse_payload(schemas.TaskAssign, {"assigned_to": data.get("assigned_to")})
        with database.session_scope() as db:
            task_obj, diff = task_store.assign_task(db, task_id, assign_in.assigned_to, user_id)
            task = _dump(schemas.Task, task_obj)

        if diff:
            await self._emit_update(task, user_id, diff)
        return task

    async def _emit_update(self, task: Dict[str, Any], user_id: int, diff: Dict[str, Dict[str, Any]]) -> None:
        """
        Publish the events for a committed task change.

        TASK_UPDATED always goes out and names the changed fields. When the
        assignees changed it also carries who was added and who was removed,
        and users who were added get a separate TASK_ASSIGNED.
        """
        extra: Dict[str, Any] = {"changes": sorted(diff)}
        if "assigned_to" in diff:
            old = diff["assigned_to"]["old"] or []
            new = diff["assigned_to"]["new"] or []
            extra["new_assignees"] = [uid for uid in new if uid not in old]
            extra["removed_assignees"] = [uid for uid in old if uid not in new]

        await self.broker.emit(TASK_UPDATED, _task_event(task, user_id, **extra))
        if extra.get("new_assignees"):
            await self.broker.emit(TASK_ASSIGNED, _task_event(task, user_id, new_assignees=extra["new_assignees"]))

    async def delete_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(data, "user_id")
        task_id = _require(data, "task_id")
        with database.session_scope() as db:
            task = task_store.delete_task(db, task_id, user_id)

        await self.broker.emit(TASK_DELETED, _task_event(task, user_id))
        return {"id": task_id, "deleted": True}

    async def get_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(data, "user_id")
        task_id = _require(data, "task_id")
        with database.session_scope() as db:
            return _dump(schemas.TaskWithComments, task_store.get_task(db, task_id, user_id))

    async def list_tasks(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(data, "user_id")
        query = parse_payload(schemas.TaskListQuery, data.get("query") or {})
        with database.session_scope() as db:
            tasks, total = task_store.list_tasks(db, user_id, query.page, query.size, query.status)
            items = [_dump(schemas.Task, task) for task in tasks]
        return {"items": items, "total": total, "page": query.page, "size": query.size}

    async def get_history(self, data: Dict[str, Any]) -> list:
        user_id = _require(data, "user_id")
        task_id = _require(data, "task_id")
        with database.session_scope() as db:
            return [_dump(schemas.TaskHistory, entry) for entry in task_store.get_history(db, task_id, user_id)]

    # ============== Comments ==============

    async def create_comment(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(data, "user_id")
        task_id = _require(data, "task_id")
        comment_in = parse_payload(schemas.CommentCreate, data.get("comment") or {})
        with database.session_scope() as db:
            comment_obj, task_obj = comment_store.create_comment(db, task_id, comment_in, user_id)
            comment = _dump(schemas.Comment, comment_obj)
            task = _dump(schemas.Task, task_obj)

        await self.broker.emit(COMMENT_CREATED, _task_event(task, user_id, comment=comment))
        return comment

    async def list_comments(self, data: Dict[str, Any]) -> list:
        user_id = _require(data, "user_id")
        task_id = _require(data, "task_id")
        with database.session_scope() as db:
            return [_dump(schemas.Comment, c) for c in comment_store.list_comments(db, task_id, user_id)]

    async def delete_comment(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user_id = _require(data, "user_id")
        task_id = _require(data, "task_id")
        comment_id = _require(data, "comment_id")
        with database.session_scope() as db:
            comment, task_obj = comment_store.delete_comment(db, task_id, comment_id, user_id)
            task = _dump(schemas.Task, task_obj)

        await self.broker.emit(COMMENT_DELETED, _task_event(task, user_id, comment=comment))
        return {"id": comment_id, "deleted": True}


def register_task_handlers(broker: MessageBroker) -> TaskService:
    service = TaskService(broker)
    service.register()
    return service
