from pydantic import BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime
from typing import Any, Dict, Optional, List
from enum import Enum


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ChangeType(str, Enum):
    """
    Kinds of entries in the append-only task history.

    Note: Database stores change_type as VARCHAR(50); this enum is the
    validation layer for the known values.
    """
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    PRIORITY_CHANGED = "priority_changed"
    DEADLINE_CHANGED = "deadline_changed"
    DELETED = "deleted"


class NotificationType(str, Enum):
    task_created = "task_created"
    task_updated = "task_updated"
    task_deleted = "task_deleted"
    task_assigned = "task_assigned"
    comment_created = "comment_created"
    comment_deleted = "comment_deleted"
    system = "system"


class EntityType(str, Enum):
    task = "task"
    comment = "comment"
    project = "project"


# Token schemas
class TokenPayload(BaseModel):
    """Decoded access token attached to the request context."""
    sub: str
    email: str
    username: str
    iat: Optional[int] = None
    exp: Optional[int] = None
    type: Optional[str] = None

    @property
    def user_id(self) -> int:
        return int(self.sub)


# User schemas
class UserBase(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    email: EmailStr
    full_name: Optional[str] = Field(None, max_length=255)


class UserCreate(UserBase):
    password: str = Field(..., min_length=6, max_length=100)


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(None, max_length=255)
    password: Optional[str] = Field(None, min_length=6, max_length=100)


class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    full_name: Optional[str] = None
    created_at: Optional[datetime] = None


# Comment schemas
class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)


class Comment(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    content: str
    task_id: int
    created_by: Optional[int]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Task history schemas
class TaskHistory(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    task_id: int
    change_type: ChangeType
    changed_by: int
    description: Optional[str] = None
    previous_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: List[int] = Field(default_factory=list)
    deadline: Optional[datetime] = None


class TaskCreate(TaskBase):
    pass


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[List[int]] = None
    deadline: Optional[datetime] = None


class TaskAssign(BaseModel):
    assigned_to: List[int]


class Task(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    assigned_to: List[int] = Field(default_factory=list)
    created_by: Optional[int]
    deadline: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TaskWithComments(Task):
    comments: List[Comment] = Field(default_factory=list)


class TaskListQuery(BaseModel):
    page: int = Field(1, ge=1)
    size: int = Field(10, ge=1, le=100)
    status: Optional[TaskStatus] = None


# Notification schemas
class Notification(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    type: str
    title: str
    message: str
    recipient_id: int
    sender_id: Optional[int] = None
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="notification_metadata")
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class NotificationCreate(BaseModel):
    type: NotificationType
    recipient_id: int
    title: str = Field(..., max_length=255)
    message: str
    sender_id: Optional[int] = None
    entity_id: Optional[str] = None
    entity_type: Optional[EntityType] = None
    metadata: Optional[Dict[str, Any]] = None


# WebSocket client payloads
class RoomRequest(BaseModel):
    room: str = Field(..., min_length=1, max_length=100)


class SendNotificationRequest(BaseModel):
    recipient_id: int
    type: NotificationType = NotificationType.system
    title: str = Field("Notification", max_length=255)
    message: str = Field(..., min_length=1)
    entity_id: Optional[str] = None
    entity_type: Optional[EntityType] = None
    metadata: Optional[Dict[str, Any]] = None
