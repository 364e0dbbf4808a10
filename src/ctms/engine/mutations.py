"""
Task mutation rules.

Pure functions: validate a create or patch, produce the next Task state and
the diff against the state being replaced. Persistence and concurrency
control live in the engine.
"""

import logging
from datetime import datetime
from typing import Optional, Union
from uuid import UUID, uuid4

from ctms.engine.errors import TaskNotFound, ValidationError
from ctms.engine.policy import Deny, TaskRelation, authorize
from ctms.models import (
    Actor,
    AssignmentChange,
    Operation,
    Task,
    TaskCreate,
    TaskDiff,
    TaskPatch,
    TaskPriority,
    TaskStatus,
    ValueChange,
)
from ctms.utils.time import utc_now

logger = logging.getLogger(__name__)

# Fields that are never nullable once a task exists
_REQUIRED_ON_UPDATE = ("title", "status", "priority", "due_date", "progress")


def _sorted_ids(ids) -> list[UUID]:
    return sorted(ids, key=str)


def _clean_title(title: Optional[str]) -> str:
    if title is None or not title.strip():
        raise ValidationError("Task title is required", field="title")
    return title.strip()


def _assignment_change(old: frozenset[UUID], new: frozenset[UUID]) -> Optional[AssignmentChange]:
    if old == new:
        return None
    return AssignmentChange(
        added=_sorted_ids(new - old),
        removed=_sorted_ids(old - new),
        old=_sorted_ids(old),
        new=_sorted_ids(new),
    )


def build_task(draft: TaskCreate, actor: Actor, now: Optional[datetime] = None) -> tuple[Task, TaskDiff]:
    """Build the initial task state and its creation diff."""
    title = _clean_title(draft.title)
    if draft.due_date is None:
        raise ValidationError("Due date is required", field="due_date")

    now = now or utc_now()
    assignees = frozenset(draft.assigned_to or ()) or frozenset({actor.id})

    task = Task(
        id=uuid4(),
        title=title,
        description=draft.description or "",
        status=TaskStatus.TODO,
        priority=draft.priority or TaskPriority.MEDIUM,
        created_by=actor.id,
        assigned_to=assignees,
        team_id=draft.team_id or actor.team_id,
        due_date=draft.due_date,
        progress=0,
        created_at=now,
        updated_at=now,
        version=1,
    )
    diff = TaskDiff(
        kind="created",
        task_id=task.id,
        assigned_to=_assignment_change(frozenset(), assignees),
    )
    return task, diff


def apply_patch(
    current: Task,
    patch: TaskPatch,
    actor: Actor,
    now: Optional[datetime] = None,
) -> tuple[Task, TaskDiff]:
    """
    Apply the fields present in patch on top of current.

    Reassignment is silently dropped for actors the gate does not allow to
    reassign; the remaining fields still apply. The returned diff is taken
    against current, which must be the exact state the caller will replace.
    """
    present = patch.present_fields()

    for name in _REQUIRED_ON_UPDATE:
        if name in present and getattr(patch, name) is None:
            raise ValidationError(f"{name} cannot be null", field=name)

    if "assigned_to" in present:
        decision = authorize(actor, Operation.REASSIGN_TASK, TaskRelation.of(current))
        if isinstance(decision, Deny) or patch.assigned_to is None:
            logger.debug(
                "Dropping assigned_to from patch on task %s by %s (%s)",
                current.id,
                actor.id,
                decision.reason if isinstance(decision, Deny) else "null value",
            )
            present.discard("assigned_to")

    updates: dict = {}
    if "title" in present:
        updates["title"] = _clean_title(patch.title)
    if "description" in present:
        updates["description"] = patch.description or ""
    for name in ("status", "priority", "due_date", "progress"):
        if name in present:
            updates[name] = getattr(patch, name)
    if "assigned_to" in present:
        new_assignees = frozenset(patch.assigned_to)
        if not new_assignees:
            raise ValidationError("A task needs at least one assignee", field="assigned_to")
        updates["assigned_to"] = new_assignees

    diff = TaskDiff(kind="updated", task_id=current.id)
    if "status" in updates and updates["status"] != current.status:
        diff.status = ValueChange(old=current.status.value, new=updates["status"].value)
    if "title" in updates and updates["title"] != current.title:
        diff.title = ValueChange(old=current.title, new=updates["title"])
    if "priority" in updates and updates["priority"] != current.priority:
        diff.priority = ValueChange(old=current.priority.value, new=updates["priority"].value)
    if "assigned_to" in updates:
        diff.assigned_to = _assignment_change(current.assigned_to, updates["assigned_to"])
    for name in ("description", "due_date", "progress"):
        if name in updates and updates[name] != getattr(current, name):
            old, new = getattr(current, name), updates[name]
            if isinstance(old, datetime):
                old, new = old.isoformat(), new.isoformat()
            diff.other[name] = ValueChange(old=old, new=new)

    now = now or utc_now()
    updates["updated_at"] = max(now, current.updated_at)
    updates["version"] = current.version + 1

    return current.model_copy(update=updates), diff


def apply_task_mutation(
    current: Optional[Task],
    patch: Union[TaskCreate, TaskPatch],
    actor: Actor,
    now: Optional[datetime] = None,
) -> tuple[Task, TaskDiff]:
    """Dispatch a create or an update and return (new_state, diff)."""
    if isinstance(patch, TaskCreate):
        return build_task(patch, actor, now)
    if current is None:
        raise TaskNotFound("<unknown>")
    return apply_patch(current, patch, actor, now)


def deletion_diff(task: Task) -> TaskDiff:
    """Terminal diff: the last known identity of the deleted task."""
    return TaskDiff(
        kind="deleted",
        task_id=task.id,
        deleted={"id": str(task.id), "title": task.title},
    )
