"""Comment model."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from ctms.models.user import UserRef


class Comment(BaseModel):
    """A comment left on a task."""

    id: UUID
    task_id: UUID
    author_id: UUID
    content: str
    created_at: datetime
    author: Optional[UserRef] = None
