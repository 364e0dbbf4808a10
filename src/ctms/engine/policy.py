"""
Authorization gate.

A pure, total function over (role, operation, relationship-to-resource).
It never touches storage; callers pass the snapshot they already loaded.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Union
from uuid import UUID

from ctms.engine.errors import AuthorizationDenied
from ctms.models import Actor, Operation, Role, Task


@dataclass(frozen=True)
class Allow:
    allowed = True


@dataclass(frozen=True)
class Deny:
    reason: str
    allowed = False


Decision = Union[Allow, Deny]

ALLOW = Allow()


@dataclass(frozen=True)
class TaskRelation:
    """Snapshot of the task fields that decide visibility and edit rights."""

    creator_id: UUID
    assignee_ids: frozenset[UUID]
    team_id: Optional[UUID] = None

    @classmethod
    def of(cls, task: Task) -> "TaskRelation":
        return cls(
            creator_id=task.created_by,
            assignee_ids=frozenset(task.assigned_to),
            team_id=task.team_id,
        )


@dataclass(frozen=True)
class NewTaskRequest:
    """Requested assignee set for a create (None when the caller omitted it)."""

    assignee_ids: Optional[frozenset[UUID]] = None


@dataclass(frozen=True)
class UserChange:
    """Target role and team of a user create/update."""

    role: Role
    team_id: Optional[UUID] = None


Resource = Union[TaskRelation, NewTaskRequest, UserChange, None]


def _is_involved(actor: Actor, task: TaskRelation) -> bool:
    return actor.id == task.creator_id or actor.id in task.assignee_ids


def _can_create_task(actor: Actor, resource: NewTaskRequest) -> Decision:
    if actor.role is not Role.MEMBER:
        return ALLOW
    requested = resource.assignee_ids
    if not requested or requested == frozenset({actor.id}):
        return ALLOW
    return Deny("forbidden_self_assign_only")


def _can_read_task(actor: Actor, task: TaskRelation) -> Decision:
    if actor.role in (Role.ADMIN, Role.HR):
        return ALLOW
    if actor.role is Role.TEAM_LEAD:
        if task.team_id is not None and task.team_id == actor.team_id:
            return ALLOW
        return Deny("not_visible")
    if _is_involved(actor, task):
        return ALLOW
    return Deny("not_visible")


def _can_update_task(actor: Actor, task: TaskRelation) -> Decision:
    if actor.role.is_privileged() or _is_involved(actor, task):
        return ALLOW
    return Deny("access_denied")


def _can_reassign_task(actor: Actor, task: TaskRelation) -> Decision:
    if actor.role.is_privileged():
        return ALLOW
    return Deny("reassign_not_permitted")


def _can_delete_task(actor: Actor, task: TaskRelation) -> Decision:
    if actor.role.is_privileged():
        return ALLOW
    return Deny("role_not_permitted")


def _can_manage_user(actor: Actor, change: UserChange) -> Decision:
    if actor.role not in (Role.ADMIN, Role.HR):
        return Deny("role_not_permitted")
    if change.role is Role.ADMIN and change.team_id is not None:
        return Deny("admin_no_team")
    return ALLOW


def _admin_only(actor: Actor, resource: Resource) -> Decision:
    if actor.role is Role.ADMIN:
        return ALLOW
    return Deny("role_not_permitted")


_RULES: dict[Operation, Callable[[Actor, Resource], Decision]] = {
    Operation.CREATE_TASK: _can_create_task,
    Operation.READ_TASK: _can_read_task,
    Operation.UPDATE_TASK: _can_update_task,
    Operation.REASSIGN_TASK: _can_reassign_task,
    Operation.DELETE_TASK: _can_delete_task,
    Operation.COMMENT_TASK: _can_read_task,
    Operation.MANAGE_USER: _can_manage_user,
    Operation.VIEW_AUDIT: _admin_only,
    Operation.PURGE_AUDIT: _admin_only,
}

_missing = set(Operation) - set(_RULES)
if _missing:
    raise RuntimeError(f"Authorization rules missing for: {sorted(o.value for o in _missing)}")


def authorize(actor: Actor, operation: Operation, resource: Resource = None) -> Decision:
    """Decide whether actor may perform operation on resource."""
    if isinstance(resource, Task):
        resource = TaskRelation.of(resource)
    return _RULES[operation](actor, resource)


def require(actor: Actor, operation: Operation, resource: Resource = None) -> None:
    """Like authorize(), but raise AuthorizationDenied on Deny."""
    decision = authorize(actor, operation, resource)
    if isinstance(decision, Deny):
        raise AuthorizationDenied(decision.reason)
