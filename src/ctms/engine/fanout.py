"""Notification fan-out: who hears about a mutation, and with what payload."""

from typing import Any
from uuid import UUID

from ctms.models import (
    Actor,
    Comment,
    NotificationDraft,
    NotificationType,
    Task,
    TaskDiff,
)


class _DraftSet:
    """Ordered drafts, at most one per recipient per triggering key, never the actor."""

    def __init__(self, actor: Actor):
        self.actor = actor
        self._drafts: dict[UUID, NotificationDraft] = {}
        self._order: list[UUID] = []

    def add(self, recipient: UUID, type_: NotificationType, payload: dict[str, Any]) -> None:
        if recipient == self.actor.id or recipient in self._drafts:
            return
        self._drafts[recipient] = NotificationDraft(
            recipient_id=recipient,
            type=type_,
            payload=dict(payload),
        )
        self._order.append(recipient)

    def drafts(self) -> list[NotificationDraft]:
        return [self._drafts[r] for r in self._order]


def _base_payload(task: Task, actor: Actor) -> dict[str, Any]:
    return {
        "task_id": str(task.id),
        "task_title": task.title,
        "actor_id": str(actor.id),
        "actor_name": actor.full_name,
    }


def _sorted(ids) -> list[UUID]:
    return sorted(ids, key=str)


def compute_notifications(diff: TaskDiff, task: Task, actor: Actor) -> list[NotificationDraft]:
    """
    Derive notification drafts for one task mutation.

    task is the post-mutation state. Newly added assignees get task_assigned;
    the remaining assignees get status_changed when the status moved. A
    recipient covered by the assignment is not also sent the status change,
    and the actor never receives anything.
    """
    if diff.kind == "deleted":
        return []

    drafts = _DraftSet(actor)

    if diff.assigned_to is not None and diff.assigned_to.added:
        payload = _base_payload(task, actor)
        payload.update(
            assigned_by=actor.full_name,
            status=task.status.value,
            priority=task.priority.value,
            due_date=task.due_date.isoformat(),
        )
        for recipient in diff.assigned_to.added:
            drafts.add(recipient, NotificationType.TASK_ASSIGNED, payload)

    if diff.status is not None:
        payload = _base_payload(task, actor)
        payload.update(old_status=diff.status.old, new_status=diff.status.new)
        for recipient in _sorted(task.assigned_to):
            drafts.add(recipient, NotificationType.STATUS_CHANGED, payload)

    return drafts.drafts()


def compute_comment_notifications(comment: Comment, task: Task, actor: Actor) -> list[NotificationDraft]:
    """Every assignee except the comment author hears about a new comment."""
    drafts = _DraftSet(actor)
    payload = _base_payload(task, actor)
    payload.update(comment_id=str(comment.id), comment_by=actor.full_name)
    for recipient in _sorted(task.assigned_to):
        drafts.add(recipient, NotificationType.COMMENT_ADDED, payload)
    return drafts.drafts()
