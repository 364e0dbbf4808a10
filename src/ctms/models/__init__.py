"""CTMS data models."""

from ctms.models.audit import AuditEvent, ChangeLogEntry
from ctms.models.comment import Comment
from ctms.models.enums import (
    ChangeEventType,
    NotificationType,
    Operation,
    RealtimeEvent,
    Role,
    TargetType,
    TaskPriority,
    TaskStatus,
)
from ctms.models.notification import Notification, NotificationDraft
from ctms.models.principal import Actor, ActorSnapshot
from ctms.models.task import (
    AssignmentChange,
    Task,
    TaskCreate,
    TaskDiff,
    TaskPatch,
    TaskView,
    ValueChange,
)
from ctms.models.user import Team, TeamRef, User, UserRef

__all__ = [
    "Actor",
    "ActorSnapshot",
    "AssignmentChange",
    "AuditEvent",
    "ChangeEventType",
    "ChangeLogEntry",
    "Comment",
    "Notification",
    "NotificationDraft",
    "NotificationType",
    "Operation",
    "RealtimeEvent",
    "Role",
    "TargetType",
    "Task",
    "TaskCreate",
    "TaskDiff",
    "TaskPatch",
    "TaskPriority",
    "TaskStatus",
    "TaskView",
    "Team",
    "TeamRef",
    "User",
    "UserRef",
    "ValueChange",
]
