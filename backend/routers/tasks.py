"""
Task and comment endpoints.

The gateway validates the request, then forwards it to the task service over
the broker; it never queries task tables itself.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

import schemas
from auth.dependencies import get_current_user
from clients import TaskServiceClient, get_task_client
from responses import envelope, pagination

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


# ============== Tasks ==============

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(
    task: schemas.TaskCreate,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    logger.info(f"Creating task '{task.title}' for user {current_user.user_id}")
    created = await client.create_task(current_user.user_id, task.model_dump(mode="json"))
    return envelope(created)


@router.get("")
async def list_tasks(
    page: int = Query(1, ge=1),
    size: int = Query(10, ge=1, le=100),
    status_filter: Optional[schemas.TaskStatus] = Query(None, alias="status"),
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    """List tasks the user created or is assigned to, newest first."""
    query = {"page": page, "size": size}
    if status_filter is not None:
        query["status"] = status_filter.value
    result = await client.list_tasks(current_user.user_id, query)
    return envelope(result["items"], pagination(result["page"], result["size"], result["total"]))


@router.get("/{task_id}")
async def get_task(
    task_id: int,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    return envelope(await client.get_task(current_user.user_id, task_id))


@router.put("/{task_id}")
async def update_task(
    task_id: int,
    task: schemas.TaskUpdate,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    """
    Update the fields present in the body.

    Only fields sent by the client are applied and diffed into the history.
    """
    changes = task.model_dump(mode="json", exclude_unset=True)
    logger.info(f"Updating task {task_id} fields={sorted(changes)} for user {current_user.user_id}")
    return envelope(await client.update_task(current_user.user_id, task_id, changes))


@router.post("/{task_id}/assign")
async def assign_task(
    task_id: int,
    assignment: schemas.TaskAssign,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    return envelope(await client.assign_task(current_user.user_id, task_id, assignment.assigned_to))


@router.delete("/{task_id}")
async def delete_task(
    task_id: int,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    logger.info(f"Deleting task {task_id} for user {current_user.user_id}")
    return envelope(await client.delete_task(current_user.user_id, task_id))


@router.get("/{task_id}/history")
async def get_task_history(
    task_id: int,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    return envelope(await client.get_history(current_user.user_id, task_id))


# ============== Comments ==============

@router.get("/{task_id}/comments")
async def list_comments(
    task_id: int,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    return envelope(await client.list_comments(current_user.user_id, task_id))


@router.post("/{task_id}/comments", status_code=status.HTTP_201_CREATED)
async def create_comment(
    task_id: int,
    comment: schemas.CommentCreate,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    created = await client.create_comment(current_user.user_id, task_id, comment.model_dump(mode="json"))
    return envelope(created)


@router.delete("/{task_id}/comments/{comment_id}")
async def delete_comment(
    task_id: int,
    comment_id: int,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    client: TaskServiceClient = Depends(get_task_client),
):
    return envelope(await client.delete_comment(current_user.user_id, task_id, comment_id))
