"""User and team models."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from ctms.models.enums import Role
from ctms.models.principal import Actor


class User(BaseModel):
    """Registered user. Credentials live with the identity provider."""

    id: UUID
    full_name: str
    email: str
    role: Role
    team_id: Optional[UUID] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    def to_actor(self) -> Actor:
        return Actor(
            id=self.id,
            email=self.email,
            full_name=self.full_name,
            role=self.role,
            team_id=self.team_id,
        )


class UserRef(BaseModel):
    """Compact user reference embedded in task and comment views."""

    id: UUID
    full_name: str
    email: str


class Team(BaseModel):
    """Team with its HR owner and lead."""

    id: UUID
    name: str
    hr_id: Optional[UUID] = None
    lead_id: Optional[UUID] = None
    created_at: datetime


class TeamRef(BaseModel):
    id: UUID
    name: str
