"""CTMS database layer."""

from ctms.db.base import Base, get_session, init_db
from ctms.db.tables import (
    ChangeLogTable,
    CommentTable,
    NotificationTable,
    TaskAssigneeTable,
    TaskTable,
    TeamTable,
    UserTable,
)

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "ChangeLogTable",
    "CommentTable",
    "NotificationTable",
    "TaskAssigneeTable",
    "TaskTable",
    "TeamTable",
    "UserTable",
]
