"""Audit (change log) models."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ctms.models.enums import ChangeEventType, TargetType
from ctms.models.principal import ActorSnapshot


class AuditEvent(BaseModel):
    """One audit event emitted at a mutation call site."""

    event_type: ChangeEventType
    actor: ActorSnapshot
    source_ip: Optional[str] = None
    target_type: Optional[TargetType] = None
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    action: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    changes: dict[str, Any] = Field(default_factory=dict)


class ChangeLogEntry(BaseModel):
    """Immutable, append-only audit record as stored."""

    id: UUID
    event_type: ChangeEventType
    user_id: Optional[UUID] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    user_role: Optional[str] = None
    user_ip: Optional[str] = None
    target_type: Optional[TargetType] = None
    target_id: Optional[str] = None
    target_name: Optional[str] = None
    action: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    changes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
