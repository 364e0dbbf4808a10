"""Task model, mutation inputs and the structured diff."""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ctms.models.enums import TaskPriority, TaskStatus
from ctms.models.user import TeamRef, UserRef
from ctms.utils.time import ensure_aware


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_aware(value) if value is not None else None


class Task(BaseModel):
    """Persisted task state."""

    id: UUID
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM

    # Ownership
    created_by: UUID
    assigned_to: frozenset[UUID] = Field(default_factory=frozenset)
    team_id: Optional[UUID] = None

    due_date: datetime
    progress: int = Field(default=0, ge=0, le=100)

    # Timestamps
    created_at: datetime
    updated_at: datetime

    # Optimistic concurrency token
    version: int = 1

    @field_validator("due_date", "created_at", "updated_at")
    @classmethod
    def normalize_times(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class TaskCreate(BaseModel):
    """Input for creating a task. Required fields are checked by the coordinator."""

    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[list[UUID]] = None
    team_id: Optional[UUID] = None
    due_date: Optional[datetime] = None

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _aware(v)


class TaskPatch(BaseModel):
    """Partial update. Only fields explicitly present are applied."""

    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[list[UUID]] = None
    due_date: Optional[datetime] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _aware(v)

    def present_fields(self) -> set[str]:
        return set(self.model_fields_set)


class ValueChange(BaseModel):
    """Before/after pair for a scalar field."""

    old: Any = None
    new: Any = None


class AssignmentChange(BaseModel):
    """Assignee set difference."""

    added: list[UUID] = Field(default_factory=list)
    removed: list[UUID] = Field(default_factory=list)
    old: list[UUID] = Field(default_factory=list)
    new: list[UUID] = Field(default_factory=list)


class TaskDiff(BaseModel):
    """
    Structured description of what a single mutation changed.

    Computed once per mutation and shared by notification fan-out, the
    realtime payload and the audit record.
    """

    kind: Literal["created", "updated", "deleted"]
    task_id: UUID
    status: Optional[ValueChange] = None
    assigned_to: Optional[AssignmentChange] = None
    title: Optional[ValueChange] = None
    priority: Optional[ValueChange] = None
    # description, due_date, progress: audited, never fanned out
    other: dict[str, ValueChange] = Field(default_factory=dict)
    # last known snapshot for deletions
    deleted: Optional[dict[str, Any]] = None

    def is_empty(self) -> bool:
        return (
            self.kind == "updated"
            and self.status is None
            and self.assigned_to is None
            and self.title is None
            and self.priority is None
            and not self.other
        )

    def to_changes(self) -> dict[str, Any]:
        """Flatten into the audit record's before/after mapping."""
        changes: dict[str, Any] = {}
        for name in ("status", "title", "priority"):
            change = getattr(self, name)
            if change is not None:
                changes[name] = change.model_dump(mode="json")
        if self.assigned_to is not None:
            changes["assigned_to"] = self.assigned_to.model_dump(mode="json")
        for name, change in self.other.items():
            changes[name] = change.model_dump(mode="json")
        if self.deleted is not None:
            changes["deleted"] = self.deleted
        return changes


class TaskView(BaseModel):
    """Task as returned to clients, with references expanded."""

    id: UUID
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    created_by: Optional[UserRef] = None
    assigned_to: list[UserRef] = Field(default_factory=list)
    team: Optional[TeamRef] = None
    due_date: datetime
    progress: int
    created_at: datetime
    updated_at: datetime
    version: int
