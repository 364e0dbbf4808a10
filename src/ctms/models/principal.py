"""Actor model - the acting principal of a request."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from ctms.models.enums import Role


class Actor(BaseModel):
    """Resolved identity of the caller. Read-only input to every component."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    email: str
    full_name: str
    role: Role
    team_id: Optional[UUID] = None

    def snapshot(self) -> "ActorSnapshot":
        """Copy the identity fields by value for downstream records."""
        return ActorSnapshot(
            user_id=self.id,
            user_email=self.email,
            user_name=self.full_name,
            user_role=self.role.value,
        )


class ActorSnapshot(BaseModel):
    """Actor identity captured at write time, detached from the live user."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[UUID] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    user_role: Optional[str] = None
