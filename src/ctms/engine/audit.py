"""
Audit recorder and the audit events emitted at each mutation call site.

Records snapshot the actor by value, so later changes to (or deletion of) the
user never alter history.
"""

import logging
from contextlib import AbstractAsyncContextManager
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ctms.db.base import get_session
from ctms.db.repositories import ChangeLogRepository
from ctms.models import (
    ActorSnapshot,
    AuditEvent,
    ChangeEventType,
    ChangeLogEntry,
    Comment,
    TargetType,
    Task,
    TaskDiff,
    User,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class AuditRecorder:
    """Appends change log entries in a session of its own."""

    def __init__(self, session_factory: SessionFactory = get_session):
        self.session_factory = session_factory

    async def record(self, event: AuditEvent) -> ChangeLogEntry:
        """Append one record. Raises on storage failure; the caller decides on retries."""
        async with self.session_factory() as session:
            entry = await ChangeLogRepository(session).append(event)
        logger.debug(f"Recorded {event.event_type.value} on {event.target_type} {event.target_id}")
        return entry


def _actor_name(actor: ActorSnapshot) -> str:
    return actor.user_name or actor.user_email or "System"


def task_event(
    diff: TaskDiff,
    task: Task,
    actor: ActorSnapshot,
    source_ip: Optional[str] = None,
) -> AuditEvent:
    """Build the audit event for a task create/update/delete from its diff."""
    name = _actor_name(actor)
    changes = diff.to_changes()
    fields = sorted(changes)

    if diff.kind == "created":
        event_type = ChangeEventType.TASK_CREATED
        action = "Created task"
        description = f'{name} created task "{task.title}"'
    elif diff.kind == "deleted":
        event_type = ChangeEventType.TASK_DELETED
        action = "Deleted task"
        description = f'{name} deleted task "{task.title}"'
    elif diff.status is not None:
        event_type = ChangeEventType.TASK_STATUS_CHANGED
        action = "Changed task status"
        description = (
            f'{name} changed status of "{task.title}" '
            f"from {diff.status.old} to {diff.status.new}"
        )
    elif diff.assigned_to is not None and fields == ["assigned_to"]:
        if diff.assigned_to.added:
            event_type = ChangeEventType.TASK_ASSIGNED
            action = "Assigned task"
            description = (
                f'{name} assigned "{task.title}" to {len(diff.assigned_to.added)} user(s)'
            )
        else:
            event_type = ChangeEventType.TASK_UNASSIGNED
            action = "Unassigned task"
            description = (
                f'{name} removed {len(diff.assigned_to.removed)} assignee(s) from "{task.title}"'
            )
    else:
        event_type = ChangeEventType.TASK_UPDATED
        action = "Updated task"
        description = f'{name} updated task "{task.title}" ({", ".join(fields) or "no changes"})'

    return AuditEvent(
        event_type=event_type,
        actor=actor,
        source_ip=source_ip,
        target_type=TargetType.TASK,
        target_id=str(task.id),
        target_name=task.title,
        action=action,
        description=description,
        metadata={"fields": fields, "version": task.version},
        changes=changes,
    )


def comment_event(
    comment: Comment,
    task: Task,
    actor: ActorSnapshot,
    source_ip: Optional[str] = None,
) -> AuditEvent:
    return AuditEvent(
        event_type=ChangeEventType.COMMENT_ADDED,
        actor=actor,
        source_ip=source_ip,
        target_type=TargetType.COMMENT,
        target_id=str(comment.id),
        target_name=task.title,
        action="Added comment",
        description=f'{_actor_name(actor)} commented on "{task.title}"',
        metadata={"task_id": str(task.id)},
    )


def user_event(
    created: bool,
    user: User,
    actor: ActorSnapshot,
    source_ip: Optional[str] = None,
    previous: Optional[User] = None,
) -> AuditEvent:
    changes = {}
    if previous is not None:
        for field in ("role", "team_id"):
            old, new = getattr(previous, field), getattr(user, field)
            if old != new:
                changes[field] = {
                    "old": getattr(old, "value", str(old) if old else None),
                    "new": getattr(new, "value", str(new) if new else None),
                }
    verb = "created" if created else "updated"
    return AuditEvent(
        event_type=ChangeEventType.USER_CREATED if created else ChangeEventType.USER_UPDATED,
        actor=actor,
        source_ip=source_ip,
        target_type=TargetType.USER,
        target_id=str(user.id),
        target_name=user.full_name,
        action=f"{verb.capitalize()} user",
        description=f"{_actor_name(actor)} {verb} user {user.email} ({user.role.value})",
        changes=changes,
    )
