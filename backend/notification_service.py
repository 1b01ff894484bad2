"""
Notification service: consumes task and comment events from the broker.

For each event one Notification row is stored per recipient (the task's
assignees, or its creator when nobody is assigned) and a "notification"
frame is pushed to each recipient's personal room. Sockets watching the
task's room receive "task-updated" or "comment-updated".

There is no acknowledgement or retry: a failing consumer logs the error and
the notification is dropped.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import database
import schemas
import task_service as events
from auth.permissions import is_task_member
from broker import MessageBroker
from realtime.manager import ConnectionManager, manager as default_manager, task_room
from services import notifications as notification_store
from task_service import parse_payload
from time_utils import iso_now

logger = logging.getLogger(__name__)

NOTIFICATION_CREATE = "notification.create"


def resolve_recipients(event: Dict[str, Any]) -> List[int]:
    """Assignees if there are any, else the creator."""
    recipients = event.get("assigned_to") or []
    if not recipients and event.get("created_by") is not None:
        recipients = [event["created_by"]]
    return list(dict.fromkeys(int(r) for r in recipients))


def update_recipients(event: Dict[str, Any]) -> List[int]:
    """
    Recipients of a task update.

    Users who were just added hear about it through the assignment
    notification instead. Users who were just removed are told once more,
    since they stop being recipients from now on.
    """
    added = {int(r) for r in event.get("new_assignees") or []}
    recipients = [r for r in resolve_recipients(event) if r not in added]
    recipients += [int(r) for r in event.get("removed_assignees") or []]
    return list(dict.fromkeys(recipients))


def _task_text(verb: str) -> Callable[[Dict[str, Any]], str]:
    return lambda event: f'Task "{event["title"]}" was {verb}.'


# pattern -> (type, title, message builder, room event or None)
# Assignment always travels with a task update, which already refreshes the room
EVENT_RULES = {
    events.TASK_CREATED: (schemas.NotificationType.task_created, "New task", _task_text("created"), "task-updated"),
    events.TASK_UPDATED: (schemas.NotificationType.task_updated, "Task updated", _task_text("updated"), "task-updated"),
    events.TASK_DELETED: (schemas.NotificationType.task_deleted, "Task deleted", _task_text("deleted"), "task-updated"),
    events.TASK_ASSIGNED: (
        schemas.NotificationType.task_assigned,
        "Task assigned",
        lambda event: f'You were assigned to task "{event["title"]}".',
        None,
    ),
    events.COMMENT_CREATED: (
        schemas.NotificationType.comment_created,
        "New comment",
        lambda event: f'A new comment was added to task "{event["title"]}".',
        "comment-updated",
    ),
    events.COMMENT_DELETED: (
        schemas.NotificationType.comment_deleted,
        "Comment deleted",
        lambda event: f'A comment was removed from task "{event["title"]}".',
        "comment-updated",
    ),
}


class NotificationService:
    def __init__(self, broker: MessageBroker, connections: Optional[ConnectionManager] = None):
        self.broker = broker
        self.connections = connections or default_manager

    def register(self) -> None:
        for pattern in EVENT_RULES:
            self.broker.add_listener(pattern, self._listener_for(pattern))
        self.broker.add_handler(NOTIFICATION_CREATE, self.handle_create)
        logger.info(f"Notification service listening on {len(EVENT_RULES)} event patterns")

    def _listener_for(self, pattern: str):
        async def listener(data: Dict[str, Any]) -> None:
            await self.handle_event(pattern, data)
        return listener

    async def handle_event(self, pattern: str, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Store and push the notifications for one domain event."""
        notification_type, title, build_message, room_event = EVENT_RULES[pattern]
        if pattern == events.TASK_ASSIGNED:
            recipients = [int(r) for r in event.get("new_assignees") or []]
        elif pattern == events.TASK_UPDATED:
            recipients = update_recipients(event)
        else:
            recipients = resolve_recipients(event)

        metadata = {"task_title": event.get("title"), "actor_id": event.get("actor_id")}
        if event.get("changes"):
            metadata["changes"] = event["changes"]
        comment = event.get("comment")
        if comment:
            metadata["comment_id"] = comment.get("id")
            metadata["comment_content"] = comment.get("content")

        stored = []
        for recipient_id in recipients:
            notification = await self.notify(schemas.NotificationCreate(
                type=notification_type,
                recipient_id=recipient_id,
                title=title,
                message=build_message(event),
                sender_id=event.get("actor_id"),
                entity_id=str(comment["id"]) if comment else str(event["task_id"]),
                entity_type=schemas.EntityType.comment if comment else schemas.EntityType.task,
                metadata=metadata,
            ))
            stored.append(notification)

        if room_event is not None:
            await self._broadcast(pattern, room_event, event, comment)

        logger.info(f"Handled {pattern} for task {event['task_id']}: {len(stored)} notifications")
        return stored

    async def _broadcast(self, pattern: str, room_event: str, event: Dict[str, Any],
                         comment: Optional[Dict[str, Any]]) -> None:
        room_payload = {
            "task_id": event["task_id"],
            "action": pattern.rsplit(".", 1)[-1],
            "timestamp": iso_now(),
        }
        if comment:
            room_payload["comment"] = comment
        else:
            room_payload["task"] = event.get("task")

        # Sockets of users who lost access to the task are dropped from its room
        created_by, assigned_to = event.get("created_by"), event.get("assigned_to") or []
        await self.connections.emit_to_room(
            task_room(event["task_id"]),
            room_event,
            room_payload,
            allow=lambda user_id: is_task_member(created_by, assigned_to, user_id),
        )

    async def notify(self, data: schemas.NotificationCreate) -> Dict[str, Any]:
        """Persist one notification and push it if the recipient is connected."""
        with database.session_scope() as db:
            notification = notification_store.create_notification(db, data)
            payload = schemas.Notification.model_validate(notification).model_dump(mode="json")

        if self.connections.is_user_online(data.recipient_id):
            await self.connections.emit_to_user(data.recipient_id, "notification", payload)
        else:
            logger.debug(f"User {data.recipient_id} offline, notification {payload['id']} left pending")
        return payload

    async def handle_create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Request handler for notification.create."""
        return await self.notify(parse_payload(schemas.NotificationCreate, data))


def register_notification_handlers(
    broker: MessageBroker, connections: Optional[ConnectionManager] = None
) -> NotificationService:
    service = NotificationService(broker, connections)
    service.register()
    return service
