"""API request/response schemas."""

from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ctms.models import ChangeLogEntry, Comment, Notification, Role, TaskView, User


# ============================================================================
# Tasks
# ============================================================================


class TaskEnvelope(BaseModel):
    message: Optional[str] = None
    task: TaskView


class TaskListResponse(BaseModel):
    tasks: list[TaskView]
    count: int


class MessageResponse(BaseModel):
    message: str


# ============================================================================
# Comments
# ============================================================================


class CreateCommentRequest(BaseModel):
    content: Optional[str] = Field(None, description="Comment text")


class CommentEnvelope(BaseModel):
    message: str
    comment: Comment


class CommentListResponse(BaseModel):
    comments: list[Comment]
    count: int


# ============================================================================
# Notifications
# ============================================================================


class NotificationListResponse(BaseModel):
    notifications: list[Notification]
    unread_count: int


class MarkReadRequest(BaseModel):
    """Absent ids mean every unread notification of the caller."""

    model_config = ConfigDict(populate_by_name=True)

    notification_ids: Optional[list[UUID]] = Field(None, alias="notificationIds")


class MarkReadResponse(BaseModel):
    message: str
    updated: int


# ============================================================================
# Change log
# ============================================================================


class ChangeLogPage(BaseModel):
    logs: list[ChangeLogEntry]
    total: int
    page: int
    limit: int
    total_pages: int


class ChangeLogStats(BaseModel):
    total: int
    by_event_type: list[dict[str, Any]]
    top_users: list[dict[str, Any]]


class ClearResponse(BaseModel):
    message: str
    deleted_count: int


# ============================================================================
# Users
# ============================================================================


class CreateUserRequest(BaseModel):
    full_name: str
    email: str
    role: Role = Role.MEMBER
    team_id: Optional[UUID] = None


class ChangeRoleRequest(BaseModel):
    """team_id is optional; leaving it out keeps the current team."""

    role: Role
    team_id: Optional[UUID] = None


class UserEnvelope(BaseModel):
    message: str
    user: User


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    status: str
    version: str
    realtime_connections: int
    pending_side_effects: int
