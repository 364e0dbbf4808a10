"""Notification models."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ctms.models.enums import NotificationType


class NotificationDraft(BaseModel):
    """A notification computed by fan-out, not yet persisted."""

    recipient_id: UUID
    type: NotificationType
    payload: dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    """Persisted notification. Only read_at is ever updated."""

    id: UUID
    recipient_id: UUID
    type: NotificationType
    payload: dict[str, Any] = Field(default_factory=dict)
    read_at: Optional[datetime] = None
    created_at: datetime
