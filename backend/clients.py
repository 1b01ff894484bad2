"""
Gateway-side client for the task service.

Routes call these methods instead of touching task tables; each call is a
broker request that times out after BROKER_REQUEST_TIMEOUT seconds. Errors
raised by the task service are re-raised here with their original code.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import Request

from broker import MessageBroker

logger = logging.getLogger(__name__)


class TaskServiceClient:
    def __init__(self, broker: MessageBroker, timeout: Optional[float] = None):
        self.broker = broker
        self.timeout = timeout

    async def _send(self, pattern: str, user_id: int, **payload) -> Any:
        logger.debug(f"Sending {pattern} for user {user_id}")
        return await self.broker.send(pattern, {"user_id": user_id, **payload}, timeout=self.timeout)

    async def create_task(self, user_id: int, task: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send("task.create", user_id, task=task)

    async def list_tasks(self, user_id: int, query: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send("task.list", user_id, query=query)

    async def get_task(self, user_id: int, task_id: int) -> Dict[str, Any]:
        return await self._send("task.get", user_id, task_id=task_id)

    async def update_task(self, user_id: int, task_id: int, task: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send("task.update", user_id, task_id=task_id, task=task)

    async def assign_task(self, user_id: int, task_id: int, assigned_to: List[int]) -> Dict[str, Any]:
        return await self._send("task.assign", user_id, task_id=task_id, assigned_to=assigned_to)

    async def delete_task(self, user_id: int, task_id: int) -> Dict[str, Any]:
        return await self._send("task.delete", user_id, task_id=task_id)

    async def get_history(self, user_id: int, task_id: int) -> List[Dict[str, Any]]:
        return await self._send("task.history", user_id, task_id=task_id)

    async def create_comment(self, user_id: int, task_id: int, comment: Dict[str, Any]) -> Dict[str, Any]:
        return await self._send("comment.create", user_id, task_id=task_id, comment=comment)

    async def list_comments(self, user_id: int, task_id: int) -> List[Dict[str, Any]]:
        return await self._send("comment.list", user_id, task_id=task_id)

    async def delete_comment(self, user_id: int, task_id: int, comment_id: int) -> Dict[str, Any]:
        return await self._send("comment.delete", user_id, task_id=task_id, comment_id=comment_id)


def get_broker(request: Request) -> MessageBroker:
    """The broker started by the application lifespan."""
    return request.app.state.broker


def get_task_client(request: Request) -> TaskServiceClient:
    return TaskServiceClient(get_broker(request))
