"""CTMS enumerations."""

from enum import Enum


class Role(str, Enum):
    """User role."""

    ADMIN = "admin"
    HR = "hr"
    TEAM_LEAD = "team_lead"
    MEMBER = "member"

    @classmethod
    def privileged(cls) -> set["Role"]:
        """Roles that may reassign and delete tasks."""
        return {cls.ADMIN, cls.HR, cls.TEAM_LEAD}

    def is_privileged(self) -> bool:
        return self in self.privileged()


class TaskStatus(str, Enum):
    """Task workflow status."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    ARCHIVED = "archived"


class TaskPriority(str, Enum):
    """Task priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationType(str, Enum):
    """Kinds of user notifications."""

    TASK_ASSIGNED = "task_assigned"
    COMMENT_ADDED = "comment_added"
    STATUS_CHANGED = "status_changed"
    TASK_DUE = "task_due"


class ChangeEventType(str, Enum):
    """Closed set of audit (change log) event types."""

    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_DELETED = "task_deleted"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_ASSIGNED = "task_assigned"
    TASK_UNASSIGNED = "task_unassigned"
    TEAM_CREATED = "team_created"
    TEAM_UPDATED = "team_updated"
    TEAM_DELETED = "team_deleted"
    TEAM_MEMBER_ADDED = "team_member_added"
    TEAM_MEMBER_REMOVED = "team_member_removed"
    REPORT_GENERATED = "report_generated"
    AUTOMATION_TRIGGERED = "automation_triggered"
    NOTIFICATION_SENT = "notification_sent"
    COMMENT_ADDED = "comment_added"
    COMMENT_UPDATED = "comment_updated"
    COMMENT_DELETED = "comment_deleted"
    BULK_IMPORT = "bulk_import"
    SYSTEM_EVENT = "system_event"


class TargetType(str, Enum):
    """Kinds of entities an audit record can point at."""

    TASK = "task"
    USER = "user"
    TEAM = "team"
    REPORT = "report"
    COMMENT = "comment"
    SYSTEM = "system"
    NOTIFICATION = "notification"
    AUTOMATION = "automation"


class Operation(str, Enum):
    """Operations checked by the authorization gate."""

    CREATE_TASK = "create_task"
    READ_TASK = "read_task"
    UPDATE_TASK = "update_task"
    REASSIGN_TASK = "reassign_task"
    DELETE_TASK = "delete_task"
    COMMENT_TASK = "comment_task"
    MANAGE_USER = "manage_user"
    VIEW_AUDIT = "view_audit"
    PURGE_AUDIT = "purge_audit"


class RealtimeEvent(str, Enum):
    """Realtime channel event names."""

    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_DELETED = "task:deleted"
    COMMENT_ADDED = "comment:added"
    TASK_ASSIGNED = "task:assigned"
    NOTIFICATION_NEW = "notification:new"

    @classmethod
    def personal_events(cls) -> set["RealtimeEvent"]:
        """Events delivered only to the recipients' personal topics."""
        return {cls.TASK_ASSIGNED, cls.NOTIFICATION_NEW}

    def is_personal(self) -> bool:
        return self in self.personal_events()
