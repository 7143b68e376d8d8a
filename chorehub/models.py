from enum import Enum
from typing import Optional

from pydantic import NaiveDatetime
from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from .db import utcnow


class ClaimState(str, Enum):
    open = "open"
    claimed = "claimed"
    released = "released"
    cancelled = "cancelled"
    expired = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ClaimState.open


class MemberRole(str, Enum):
    admin = "admin"
    parent = "parent"
    child = "child"


class TaskStatus(str, Enum):
    open = "open"
    assigned = "assigned"


class Household(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    display_name: str
    hashed_password: str
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)


class HouseholdMember(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("household_id", "user_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    household_id: int = Field(foreign_key="household.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    role: MemberRole = Field(default=MemberRole.parent)
    joined_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)


class Task(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    household_id: int = Field(foreign_key="household.id", index=True)
    title: str
    description: Optional[str] = None
    points: int = Field(default=0)
    deadline: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    status: TaskStatus = Field(default=TaskStatus.open)
    created_by_user_id: int = Field(foreign_key="user.id")
    assignee_user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)


class ClaimableResource(SQLModel, table=True):
    """A time-bounded offer that exactly one actor per claim group may take."""

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True)
    household_id: int = Field(foreign_key="household.id", index=True)
    subject_key: str = Field(index=True)
    group_key: str = Field(index=True)
    scope_id: Optional[int] = Field(default=None, index=True)
    token: Optional[str] = Field(default=None, unique=True, index=True)
    state: ClaimState = Field(default=ClaimState.open, index=True)
    owner_user_id: int = Field(foreign_key="user.id")
    claimed_by_user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: NaiveDatetime = Field(index=True, sa_type=DateTime)
    claimed_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    released_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    cancelled_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    expired_at: Optional[NaiveDatetime] = Field(default=None, sa_type=DateTime)
    updated_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime)


__all__ = [
    "ClaimState",
    "MemberRole",
    "TaskStatus",
    "Household",
    "User",
    "HouseholdMember",
    "Task",
    "ClaimableResource",
]
